import logging
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import requests

from igc.utils.exceptions import ParameterError
from igc.utils.vcs import github_api_url

GIT_SLUG_REGEX = re.compile(r"^https?://[^/]+/([^/]+)/([^/]+)")
REQUEST_TIMEOUT = 30


class WebhookError(Exception):
    pass


@dataclass(frozen=True)
class CreateWebhookParams:
    git_url: str
    git_username: str
    git_token: str
    jenkins_url: str


def parse_git_slug(git_url: str) -> tuple[str, str]:
    match = GIT_SLUG_REGEX.match(git_url)
    if not match:
        raise ParameterError(f"Invalid url: {git_url}")
    return match.group(1), match.group(2).removesuffix(".git")


def hooks_url(git_url: str) -> str:
    owner, repo = parse_git_slug(git_url)
    parsed = urlparse(git_url)
    api_url = github_api_url(f"{parsed.scheme}://{parsed.netloc}")
    return f"{api_url}/repos/{owner}/{repo}/hooks"


def webhook_data(jenkins_url: str) -> dict[str, Any]:
    return {
        "name": "web",
        "active": True,
        "events": ["push"],
        "config": {
            "url": f"{jenkins_url.rstrip('/')}/github-webhook/",
            "content_type": "json",
            "insecure_ssl": "0",
        },
    }


def create_webhook(params: CreateWebhookParams) -> int:
    """Registers a push webhook pointing to Jenkins and returns its id."""
    url = hooks_url(params.git_url)
    logging.info(f"creating webhook on {url}")
    response = requests.post(
        url,
        json=webhook_data(params.jenkins_url),
        headers={
            "Authorization": f"token {params.git_token}",
            "User-Agent": f"{params.git_username} via igc cli",
            "Accept": "application/vnd.github.v3+json",
        },
        timeout=REQUEST_TIMEOUT,
    )
    if response.status_code not in {200, 201}:
        raise WebhookError(
            f"Error creating webhook: {response.status_code}, {response.text}"
        )
    return response.json()["id"]
