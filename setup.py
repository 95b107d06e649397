# aws-ssm-port-forward packaging

import os
import sys
import pathlib

from setuptools import setup, find_packages
from setuptools.command.install import install

import ssm_forward

HERE = pathlib.Path(__file__).parent
README = (HERE / "README.md").read_text()

SCRIPTS = [
    "ssm-port-forward",
]
VERSION = ssm_forward.__version__

requirements = HERE / "requirements.txt"
with requirements.open() as f:
    reqs = [req.strip() for req in f.readlines() if req.strip() and not req.startswith("#")]


class VerifyVersionCommand(install):
    """Custom command to verify that the git tag matches our version"""

    description = "verify that the git tag matches our version"

    def run(self) -> None:
        tag = os.getenv("CIRCLE_TAG")
        if not tag:
            sys.exit("Env var $CIRCLE_TAG is not defined - are we running a CircleCI build?")

        if tag.startswith("v"):  # If tag is v1.2.3 make it 1.2.3
            tag = tag[1:]

        if tag != VERSION:
            info = f"Git tag: {tag} does not match the version of this app: {VERSION}"
            sys.exit(info)


def console_scripts() -> list:
    # All script entries must be in this format:
    # "ssm-port-forward = ssm_forward.ssm_port_forward_cli:main"
    return [f"{script} = ssm_forward.{script.replace('-', '_')}_cli:main" for script in SCRIPTS]


setup(
    name="aws-ssm-port-forward",
    version=VERSION,
    packages=find_packages(exclude=["tests", "tests.*"]),
    entry_points={
        "console_scripts": console_scripts(),
    },
    python_requires=">=3.9",
    install_requires=reqs,
    extras_require={
        "test": ["pytest"],
    },
    package_data={
        "": ["*.txt", "*.md"],
    },
    description="Forward local ports to remote hosts through SSM-enabled EC2 instances: " + " ".join(SCRIPTS),
    long_description=README,
    long_description_content_type="text/markdown",
    license="Apache License 2.0",
    keywords="aws ssm port-forwarding " + " ".join(SCRIPTS),
    classifiers=[
        "Environment :: Console",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Systems Administration",
        "Topic :: System :: Networking",
    ],
    cmdclass={
        "verify": VerifyVersionCommand,
    },
)
