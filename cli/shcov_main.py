import signal
import sys
from pathlib import Path

import click

from shcov_constants import DEFAULT_OUTPUT_FILENAME
from run_record import RunRecord, RunTiming
from shcov_runner import RunOptions, Runner


def exit_code_for(returncode: int) -> int:
    """Map a Popen return code to what a shell would report: a command killed
    by signal N exits with 128 + N."""
    if returncode < 0:
        return 128 + -returncode
    return returncode


@click.group()
def cli():
    pass


@cli.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.option(
    "--root",
    "root_directory",
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
    default=Path("."),
    help="Project root, scanned for *.sh files that never ran (default: current directory).",
)
@click.option(
    "--skip-uncovered",
    is_flag=True,
    help="Don't report *.sh files under the root that never ran.",
)
@click.option("--mute", is_flag=True, help="Discard the command's stdout and stderr.")
@click.option(
    "--filter",
    "filters",
    multiple=True,
    metavar="REGEX",
    help="Drop commands whose source matches REGEX. May be repeated.",
)
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path(DEFAULT_OUTPUT_FILENAME),
    help=f"Where to write the coverage record (default: {DEFAULT_OUTPUT_FILENAME}).",
)
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def run(root_directory, skip_uncovered, mute, filters, output, command):
    """Run COMMAND with Bash xtrace enabled and record line coverage."""
    if not command:
        click.echo("Error: No command specified", err=True)
        sys.exit(1)

    options = RunOptions(
        root_directory=root_directory,
        skip_uncovered=skip_uncovered,
        mute=mute,
        filters=list(filters),
    )
    runner = Runner(command, options)

    timing = RunTiming()
    try:
        returncode = runner.run()
    except OSError as e:
        raise click.ClickException(f"Cannot run {command[0]}: {e.strerror or e}") from e
    elapsed = timing.elapsed()

    try:
        coverage = runner.result()
    except ValueError as e:
        raise click.ClickException(f"Cannot compute coverage: {e}") from e

    record = RunRecord(
        command=list(command),
        exit_code=returncode,
        start_unix_timestamp=timing.start_unix_timestamp,
        elapsed_ms=elapsed.duration_ms_int(),
        coverage=coverage,
    )
    record.save(output)

    relevant = record.relevant_lines()
    covered = record.covered_lines()
    pct = 100.0 * covered / relevant if relevant else 100.0
    click.echo(
        f"Coverage for {len(record.coverage)} file(s) written to {output}: "
        f"{covered} / {relevant} lines ({pct:.2f}%) covered.",
        err=True,
    )

    if returncode < 0:
        try:
            signame = signal.Signals(-returncode).name
        except ValueError:
            signame = f"signal {-returncode}"
        click.echo(f"Command killed by {signame}", err=True)
    sys.exit(exit_code_for(returncode))


if __name__ == "__main__":
    cli()
