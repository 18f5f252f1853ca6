import logging
import os
import re
import shutil
import sys
import traceback
from collections.abc import (
    Callable,
    Iterable,
)
from functools import wraps
from typing import Any

import click
import sentry_sdk
from click.core import ParameterSource
from sentry_sdk.integrations.logging import LoggingIntegration

from igc.create_webhook import (
    CreateWebhookParams,
    create_webhook,
)
from igc.gitops_module import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TMP_DIR,
    MODULE_TYPES,
    GitOpsModuleParams,
    PopulateResult,
)
from igc.gitops_module import run as run_gitops_module
from igc.namespace import (
    NamespaceParams,
    NamespaceProvisioner,
)
from igc.status import ExitCodes
from igc.utils.exceptions import ParameterError
from igc.utils.git import (
    GitClient,
    browser_url,
)
from igc.utils.gitops_config import GitOpsLayer
from igc.utils.mutex import (
    DEFAULT_LOCK_TIMEOUT,
    LockStrategy,
)
from igc.utils.oc import (
    OCCli,
    find_binary,
)

IGC_LOG_LEVEL = "IGC_LOG_LEVEL"
LOG_FMT = (
    "[%(asctime)s] [%(levelname)s] "
    "[%(filename)s:%(funcName)s:%(lineno)d] - %(message)s"
)
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LOCK_CHOICES = [s.value for s in LockStrategy] + [s.value[0] for s in LockStrategy]


def before_breadcrumb(crumb: dict, _: Any) -> dict:
    # https://docs.sentry.io/platforms/python/configuration/filtering/
    if "message" in crumb and crumb["message"]:
        crumb["message"] = re.sub(
            r"(Authorization:?\s+(Basic|token|Bearer))\s+\S+",
            r"\1 ***",
            crumb["message"],
        )
        crumb["message"] = re.sub(
            r"(https?://[^:/@\s]+):[^@\s]+@", r"\1:***@", crumb["message"]
        )
    return crumb


# Enable Sentry
if os.getenv("SENTRY_DSN"):
    sentry_sdk.init(
        os.environ["SENTRY_DSN"],
        before_breadcrumb=before_breadcrumb,
        integrations=[
            LoggingIntegration(event_level=logging.ERROR),
        ],
    )


def env_flag(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).lower() in {"true", "1", "yes"}


def init_log_level(log_level: str | None, debug: bool, quiet: bool) -> None:
    if debug:
        level = "DEBUG"
    elif quiet:
        level = "WARNING"
    else:
        level = log_level or os.environ.get(IGC_LOG_LEVEL, "INFO")
    logging.basicConfig(
        format=LOG_FMT,
        datefmt=LOG_DATEFMT,
        level=getattr(logging, level.upper(), logging.INFO),
    )


def binary(binaries: Iterable[str | tuple[str, ...]]) -> Callable:
    """
    Check that binaries exist before execution. A tuple is a list of
    alternatives of which one must exist.
    """

    def deco_binary(f: Callable) -> Callable:
        @wraps(f)
        def f_binary(*args: Any, **kwargs: Any) -> Any:
            for b in binaries:
                alternatives = (b,) if isinstance(b, str) else b
                if not any(shutil.which(a) for a in alternatives):
                    name = " or ".join(alternatives)
                    raise FileNotFoundError(
                        f"Aborting: Could not find binary: {name}. "
                        + f"Hint: https://command-not-found.com/{alternatives[0]}"
                    )
            return f(*args, **kwargs)

        return f_binary

    return deco_binary


def exit_codes(f: Callable) -> Callable:
    @wraps(f)
    def f_exit_codes(*args: Any, **kwargs: Any) -> Any:
        try:
            return f(*args, **kwargs)
        except ParameterError as e:
            sys.stderr.write(f"{e}\n")
            sys.exit(ExitCodes.PARAMETER_ERROR)
        except Exception as e:
            if logging.getLogger().isEnabledFor(logging.DEBUG):
                traceback.print_exc(file=sys.stderr)
            else:
                sys.stderr.write(f"{type(e).__name__}: {e}\n")
            sys.exit(ExitCodes.ERROR)

    return f_exit_codes


def gitops_options(function: Callable) -> Callable:
    options = [
        click.option(
            "--content-dir",
            "--contentDir",
            "-c",
            "content_dir",
            help="The directory or url where the payload content has been placed.",
        ),
        click.option(
            "--gitops-config-file",
            "--gitopsConfigFile",
            "gitops_config_file",
            help="Name of yaml or json file that contains the gitops config values.",
        ),
        click.option(
            "--bootstrap-repo-url",
            "--bootstrapRepoUrl",
            "bootstrap_repo_url",
            help="Url of the bootstrap repo that contains the gitops config yaml.",
        ),
        click.option(
            "--gitops-credentials-file",
            "--gitopsCredentialsFile",
            "gitops_credentials_file",
            help="Name of yaml or json file that contains the gitops credentials.",
        ),
        click.option(
            "--token",
            default=lambda: os.environ.get("GIT_TOKEN"),
            help="Git personal access token to access the gitops repos.",
        ),
        click.option(
            "--username",
            default=lambda: os.environ.get("GIT_USERNAME"),
            help="Git user the token belongs to.",
        ),
        click.option(
            "--application-path",
            "--applicationPath",
            "application_path",
            help="Path within the payload directory, defaults to the name.",
        ),
        click.option(
            "--branch", help="The branch where the payload has been deployed."
        ),
        click.option(
            "--server-name",
            "--serverName",
            "server_name",
            default="default",
            show_default=True,
            help="The name of the cluster.",
        ),
        click.option(
            "--value-files",
            "--valueFiles",
            "value_files",
            help="Comma-separated list of helm value files.",
        ),
        click.option(
            "--lock",
            type=click.Choice(LOCK_CHOICES),
            default=lambda: os.environ.get("LOCK", LockStrategy.BRANCH.value),
            help="Git repo locking style.",
        ),
        click.option(
            "--auto-merge/--no-auto-merge",
            "--autoMerge/--no-autoMerge",
            "auto_merge",
            default=lambda: env_flag("AUTO_MERGE", True),
            help="Merge the pull request. Only applies to the branch lock.",
        ),
        click.option(
            "--delete",
            "-d",
            is_flag=True,
            default=False,
            help="Delete the content from the gitops repo.",
        ),
        click.option(
            "--ignore-diff",
            "--ignoreDiff",
            "ignore_diff",
            default=lambda: os.environ.get("IGNORE_DIFF"),
            help="JSON for the ignoreDifferences block of the Argo CD application.",
        ),
        click.option(
            "--rate-limit/--no-rate-limit",
            "--rateLimit/--no-rateLimit",
            "rate_limit",
            default=lambda: env_flag("RATE_LIMIT", False),
            help="Rate limit the calls to the git host.",
        ),
        click.option(
            "--cascading-delete/--no-cascading-delete",
            "--cascadingDelete/--no-cascadingDelete",
            "cascading_delete",
            default=True,
            help="Configure the Argo CD application for cascading deletes.",
        ),
        click.option(
            "--tmp-dir",
            "--tmpDir",
            "tmp_dir",
            default=DEFAULT_TMP_DIR,
            show_default=True,
            help="Directory for lock markers and checkouts.",
        ),
        click.option(
            "--lock-timeout",
            "lock_timeout",
            type=float,
            default=DEFAULT_LOCK_TIMEOUT,
            show_default=True,
            help="Seconds to wait for the pessimistic lock.",
        ),
        click.option(
            "--max-attempts",
            "max_attempts",
            type=click.IntRange(min=1),
            default=DEFAULT_MAX_ATTEMPTS,
            show_default=True,
            help="Attempts of the branch lock before giving up.",
        ),
    ]
    for option in reversed(options):
        function = option(function)
    return function


def build_gitops_params(ctx: click.Context, **kwargs: Any) -> GitOpsModuleParams:
    if not kwargs["delete"] and not kwargs["content_dir"]:
        kwargs["content_dir"] = os.getcwd()
    # a GIT_TOKEN from the environment must not conflict with a credentials file
    if (
        kwargs.get("gitops_credentials_file")
        and ctx.get_parameter_source("token") == ParameterSource.DEFAULT
    ):
        kwargs["token"] = None
    params = GitOpsModuleParams.build(**kwargs)
    if ctx.obj["debug"]:
        for k, v in params.masked().items():
            click.echo(f"  {k}: {v}", err=True)
    return params


def report_result(ctx: click.Context, name: str, result: PopulateResult) -> None:
    if ctx.obj["quiet"]:
        return
    if not result.changed:
        click.echo(f"No changes for {name}")
        return
    click.echo(f"Updated gitops repo for {name}")
    for pr in result.pull_requests:
        click.echo(f"  {pr.url}")


@click.group()
@click.option(
    "--log-level",
    help="log-level of the command. Defaults to INFO.",
    type=click.Choice(LOG_LEVELS),
)
@click.option("--debug", is_flag=True, default=False, help="Turn on debug logging.")
@click.option(
    "--quiet", is_flag=True, default=False, help="Only print warnings and errors."
)
@click.pass_context
def root(ctx: click.Context, log_level: str | None, debug: bool, quiet: bool) -> None:
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["quiet"] = quiet
    init_log_level(log_level, debug, quiet)


@root.command(
    "gitops-module",
    short_help="Populates the gitops repo with a module and its Argo CD application.",
)
@click.argument("name")
@click.option(
    "--namespace", "-n", required=True, help="Namespace the module is deployed to."
)
@click.option(
    "--layer",
    "-l",
    type=click.Choice([layer.value for layer in GitOpsLayer]),
    default=GitOpsLayer.APPLICATIONS.value,
    show_default=True,
    help="The gitops layer where the configuration will be deployed.",
)
@click.option(
    "--type",
    "type_",
    type=click.Choice(MODULE_TYPES),
    default="base",
    show_default=True,
    help="The type of component added to the gitops repo.",
)
@gitops_options
@click.pass_context
@exit_codes
@binary(["git"])
def gitops_module(ctx: click.Context, type_: str, **kwargs: Any) -> None:
    params = build_gitops_params(ctx, type=type_, **kwargs)
    report_result(ctx, params.name, run_gitops_module(params))


@root.command(
    "gitops-namespace",
    short_help="Populates the gitops repo with the configuration of a namespace.",
)
@click.argument("name")
@click.option(
    "--namespace",
    "-n",
    default="default",
    show_default=True,
    help="Namespace of the module.",
)
@gitops_options
@click.pass_context
@exit_codes
@binary(["git"])
def gitops_namespace(ctx: click.Context, **kwargs: Any) -> None:
    params = build_gitops_params(
        ctx,
        layer=GitOpsLayer.INFRASTRUCTURE.value,
        is_namespace=True,
        **kwargs,
    )
    report_result(ctx, params.name, run_gitops_module(params))


@root.command(short_help="Creates a namespace and copies the tool configuration.")
@click.argument("name")
@click.option(
    "--template-namespace",
    "--templateNamespace",
    "-t",
    "template_namespace",
    default="tools",
    show_default=True,
    help="Namespace the configuration is copied from.",
)
@click.option(
    "--service-account",
    "--serviceAccount",
    "-z",
    "service_account",
    default="default",
    show_default=True,
    help="Service account that gets the image pull secrets.",
)
@click.option("--tekton", is_flag=True, default=False, help="Set up tekton.")
@click.option(
    "--argocd",
    is_flag=True,
    default=False,
    help="Grant the Argo CD service accounts access instead of copying.",
)
@click.option(
    "--argocd-namespace",
    "--argocdNamespace",
    "argocd_namespace",
    default="tools",
    show_default=True,
    help="Namespace Argo CD runs in.",
)
@click.pass_context
@exit_codes
@binary([("oc", "kubectl")])
def namespace(
    ctx: click.Context,
    name: str,
    template_namespace: str,
    service_account: str,
    tekton: bool,
    argocd: bool,
    argocd_namespace: str,
) -> None:
    oc = OCCli(binary=find_binary() or "oc")
    result = NamespaceProvisioner(oc).create(
        NamespaceParams(
            namespace=name,
            template_namespace=template_namespace,
            service_account=service_account,
            tekton=tekton,
            argocd=argocd,
            argocd_namespace=argocd_namespace,
        )
    )
    if not ctx.obj["quiet"]:
        click.echo(f"Namespace {result} is ready")


@root.command(
    "create-webhook", short_help="Creates a git webhook triggering a Jenkins build."
)
@click.option("--git-url", "--gitUrl", "-g", "git_url", required=True)
@click.option(
    "--git-username",
    "--gitUsername",
    "-u",
    "git_username",
    default=lambda: os.environ.get("GIT_USERNAME"),
    required=True,
)
@click.option(
    "--git-token",
    "--gitToken",
    "-p",
    "git_token",
    default=lambda: os.environ.get("GIT_TOKEN"),
    required=True,
)
@click.option("--jenkins-url", "--jenkinsUrl", "-j", "jenkins_url", required=True)
@click.pass_context
@exit_codes
def create_webhook_cmd(
    ctx: click.Context,
    git_url: str,
    git_username: str,
    git_token: str,
    jenkins_url: str,
) -> None:
    hook_id = create_webhook(
        CreateWebhookParams(
            git_url=git_url,
            git_username=git_username,
            git_token=git_token,
            jenkins_url=jenkins_url,
        )
    )
    click.echo(hook_id)


@root.command(short_help="Opens the url of a git remote in the browser.")
@click.argument("remote", default="origin")
@click.option(
    "--open/--no-open",
    "open_browser",
    default=True,
    help="Launch the browser.",
)
@exit_codes
@binary(["git"])
def git(remote: str, open_browser: bool) -> None:
    client = GitClient()
    if not client.is_inside_work_tree():
        click.echo(
            "No git configuration found. "
            "The current directory does not appear to be a git repository."
        )
        return
    remote_url = client.remote_url(remote)
    if not remote_url:
        click.echo(f"Unable to find git remote {remote}")
        return
    url = browser_url(remote_url)
    click.echo(f"Launching git repo url: {url}")
    if open_browser:
        click.launch(url)
