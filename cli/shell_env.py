import functools
import os
import shlex
import subprocess
from collections.abc import Iterator, Sequence
from contextlib import contextmanager

import click
from packaging.version import InvalidVersion, Version

from shcov_constants import ENV_BASH, ENV_SHOW_CMDS, MIN_BASH_VERSION_FOR_XTRACEFD

type RunSpec = str | Sequence[str | os.PathLike[str]]


def mk_env_for(env_ext: dict[str, str] | None = None, env: dict[str, str] | None = None) -> dict[str, str]:
    """The environment for a traced child: `env` (default: ours, including
    any injected SHELLOPTS), overlaid with `env_ext`."""
    if env is None:
        env = os.environ.copy()

    if env_ext is not None:
        env = {**env, **env_ext}

    return env


def shellize(cmd: RunSpec) -> str:
    if isinstance(cmd, str):
        return cmd
    else:
        return " ".join(shlex.quote(str(x)) for x in cmd)


def common_helper_for_run(cmd: RunSpec) -> None:
    if os.environ.get(ENV_SHOW_CMDS, "0") != "0":
        click.echo(f": {shellize(cmd)}", err=True)


@contextmanager
def injected_shellopts(*flags: str) -> Iterator[str]:
    """Add `flags` to the exported SHELLOPTS for the duration of the block.

    Bash enables every option listed in an inherited SHELLOPTS at startup, so
    this reaches nested shells too. Existing options are kept; the original
    value (or its absence) is restored on the way out, however we leave."""
    existing = os.environ.get("SHELLOPTS")
    existing_flags = existing.split(":") if existing else []
    merged = ":".join([*existing_flags, *(f for f in flags if f not in existing_flags)])

    os.environ["SHELLOPTS"] = merged
    try:
        yield merged
    finally:
        if existing is None:
            os.environ.pop("SHELLOPTS", None)
        else:
            os.environ["SHELLOPTS"] = existing


def default_bash() -> str:
    return os.environ.get(ENV_BASH, "bash")


@functools.cache
def bash_version(bash: str) -> Version | None:
    """The major.minor version of `bash`, or None if it cannot be run."""
    probe = 'echo "${BASH_VERSINFO[0]}.${BASH_VERSINFO[1]}"'
    env = {k: v for k, v in os.environ.items() if k not in ("SHELLOPTS", "BASH_ENV")}
    try:
        out = subprocess.check_output([bash, "-c", probe], env=env, stderr=subprocess.DEVNULL)
    except (OSError, subprocess.CalledProcessError):
        return None

    try:
        return Version(out.decode("utf-8").strip())
    except InvalidVersion:
        return None


def bash_xtracefd_supported(bash: str) -> bool:
    """Whether `bash` honours BASH_XTRACEFD (Bash 4.1 and later)."""
    version = bash_version(bash)
    return version is not None and version >= Version(MIN_BASH_VERSION_FOR_XTRACEFD)
