import os
import subprocess
import tempfile
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

import bash_lexer
import shell_env
from shcov_constants import PROGRAM_NAME, SHELL_SCRIPT_GLOB
from field_stream import FieldStream
from shcov_types import CoverageResult
from source_file import FilterPattern, SourceFile
from shcov_xtrace import Xtrace, XtraceError


@dataclass
class RunOptions:
    """Knobs for a single `Runner`.

    Notes:
    - `root_directory` is scanned for `*.sh` files that never ran, unless
      `skip_uncovered` is set (scanning a large tree can be slow).
    - `mute` discards the command's own stdout/stderr.
    - `filters` drop commands whose source text matches any of them.
    - `bash` is only used to probe for BASH_XTRACEFD support; the command
      itself is run as given.
    """

    root_directory: Path = field(default_factory=Path.cwd)
    skip_uncovered: bool = False
    mute: bool = False
    filters: Sequence[FilterPattern] = ()
    bash: str = field(default_factory=shell_env.default_bash)


def write_warning(message: str) -> None:
    text = " ".join(line.strip() for line in message.strip().splitlines())
    click.echo(click.style(f"{PROGRAM_NAME}: warning: {text}", fg="yellow"), err=True)


class Runner:
    """Runs a command with Bash's xtrace forced on, then computes coverage."""

    # The BASH_XTRACEFD fallback warning is shown at most once per process.
    warned_about_xtracefd = False

    def __init__(self, command: Sequence[str], options: RunOptions | None = None):
        self.command = list(command)
        self.options = options if options is not None else RunOptions()
        self.files: dict[Path, SourceFile] = {}
        self._result: CoverageResult | None = None

    def run(self) -> int:
        """Run the command, binding our stdin to it.

        Returns the command's exit status, unmodified."""
        self._result = None
        self.files = {}

        with (
            Xtrace(FieldStream(), cwd=Path.cwd()) as xtrace,
            tempfile.TemporaryDirectory(prefix=f"{PROGRAM_NAME}-") as tempdir,
        ):
            bash_env = xtrace.write_bash_env(Path(tempdir), os.environ.get("BASH_ENV"))
            env_ext = {"PS4": xtrace.ps4, "BASH_ENV": str(bash_env)}
            popen_kwargs: dict[str, Any] = {}
            if self.options.mute:
                popen_kwargs["stdout"] = subprocess.DEVNULL
                popen_kwargs["stderr"] = subprocess.DEVNULL
            self._bind_xtrace_fd(xtrace, env_ext, popen_kwargs)

            with shell_env.injected_shellopts("xtrace"):
                shell_env.common_helper_for_run(self.command)
                proc = subprocess.Popen(
                    self.command, env=shell_env.mk_env_for(env_ext), **popen_kwargs
                )

                # The pipe must be drained while the command runs, or the
                # command blocks once the pipe buffer fills up.
                with ThreadPoolExecutor(max_workers=1) as pool:
                    reader = pool.submit(xtrace.read)
                    try:
                        proc.wait()
                    finally:
                        xtrace.close()

                    try:
                        self.files = reader.result()
                    except XtraceError as e:
                        write_warning(f"""
                            encountered an error parsing Bash's output (error was:
                            {e}). This can occur if your script or its path contains
                            the sequence {xtrace.delimiter!r}, or if your script unsets
                            LINENO. Aborting early; coverage report will be incomplete.
                        """)
                        self.files = e.files

        return proc.returncode

    def _bind_xtrace_fd(self, xtrace: Xtrace, env_ext: dict[str, str], popen_kwargs: dict[str, Any]):
        fd = xtrace.file_descriptor
        if shell_env.bash_xtracefd_supported(self.options.bash):
            popen_kwargs["pass_fds"] = (fd,)
            env_ext["BASH_XTRACEFD"] = str(fd)
            return

        # Older versions of Bash (< 4.1) don't have BASH_XTRACEFD, so xtrace
        # output goes to standard error; send that into the pipe instead.
        popen_kwargs["stderr"] = fd

        # Don't bother warning if we're silencing output anyway.
        if not self.options.mute and not Runner.warned_about_xtracefd:
            Runner.warned_about_xtracefd = True
            write_warning("""
                you are using a version of Bash that does not support
                BASH_XTRACEFD. All xtrace output will print to standard error, and
                your script's output on standard error will not be printed to the
                console.
            """)

    def result(self) -> CoverageResult:
        """Coverage of the last run, as file path -> coverage array.

        Computed once per run."""
        if self._result is None:
            self.find_bash_files()
            self.expunge_invalid_files()
            self._result = self.convert_coverage()
        return self._result

    def find_bash_files(self) -> None:
        """Register every script under the root that never ran."""
        if self.options.skip_uncovered:
            return

        root = Path(os.path.abspath(self.options.root_directory))
        for path in sorted(root.glob(SHELL_SCRIPT_GLOB)):
            if path not in self.files and path.is_file():
                self.files[path] = SourceFile(path)

    def expunge_invalid_files(self) -> None:
        for filename in list(self.files):
            if not Path(filename).is_file():
                write_warning(f"""
                    {filename} was executed but has been deleted since then - it won't
                    be reported in coverage.
                """)
                del self.files[filename]

    def convert_coverage(self) -> CoverageResult:
        coverage: CoverageResult = {}
        for filename, source_file in self.files.items():
            source_file.lex(bash_lexer)
            source_file.filter(*self.options.filters)
            coverage[str(filename)] = source_file.to_coverage()
        return coverage
