from setuptools import find_packages, setup

setup(
    name="igc-cli",
    version="0.1.0",
    license="Apache License 2.0",

    author="Cloud-Native Toolkit Team",
    python_requires=">=3.11",
    description="Command line tools to provision namespaces and populate "
                "gitops repositories with modules deployed by Argo CD.",

    packages=find_packages(exclude=('igc.test', 'igc.test.*')),

    install_requires=[
        "sretoolbox>=1.2,<3.0",
        "Click>=8.0,<9.0",
        "PyGithub>=2.1,<3.0",
        "python-gitlab>=4.0,<6.0",
        "PyYAML>=6.0,<7.0",
        "ruamel.yaml>=0.17.21,<0.19.0",
        "requests>=2.31,<3.0",
        "sentry-sdk>=1.40,<3.0",
        "pydantic>=2.5,<3.0",
    ],

    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-mock>=3.12",
        ],
    },

    test_suite="igc.test",

    classifiers=[
        'Development Status :: 3 - Alpha',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
    ],
    entry_points={
        'console_scripts': [
            'igc = igc.cli:root',
        ],
    },
)
