import os
import sys
from pathlib import Path

import pytest

import shell_env
import shcov_xtrace
from shcov_runner import RunOptions, Runner
from source_file import SourceFile
from test_fixtures import needs_bash

SCRIPT = """\
#!/bin/bash

[[ -d / ]] && echo hi

f() {
  echo in f
}
f
f
if false; then
  echo never
fi
"""


def run_script(script: Path, root: Path, **options) -> Runner:
    runner = Runner(["bash", str(script)], RunOptions(root_directory=root, **options))
    runner.run()
    return runner


@needs_bash
def test_run_computes_line_coverage(write_script, test_tmp_dir, clean_shellopts):
    script = write_script("main.sh", SCRIPT)
    runner = Runner(["bash", str(script)], RunOptions(root_directory=test_tmp_dir, mute=True))

    assert runner.run() == 0
    coverage = runner.result()[str(script)]

    assert len(coverage) == 12
    assert coverage[0] is None  # shebang
    assert coverage[1] is None
    assert coverage[2] == 2  # `[[ -d / ]]` and `echo hi`
    assert coverage[4] is None  # f() {
    assert coverage[5] == 2
    assert coverage[6] is None  # }
    assert coverage[7] == 1
    assert coverage[8] == 1
    assert coverage[10] == 0  # echo never
    assert coverage[11] is None  # fi


@needs_bash
def test_run_keeps_distinct_commands_on_a_line(write_script, test_tmp_dir, clean_shellopts):
    script = write_script("main.sh", SCRIPT)
    runner = run_script(script, test_tmp_dir, mute=True)
    runner.result()

    srcs = sorted(cmd.src for cmd in runner.files[script][3])
    assert srcs == ["[[ -d / ]]", "echo hi"]


@needs_bash
def test_run_returns_exit_status_unmodified(write_script, test_tmp_dir, clean_shellopts):
    script = write_script("fail.sh", "echo about to fail\nexit 3\n")
    runner = Runner(["bash", str(script)], RunOptions(root_directory=test_tmp_dir, mute=True))

    assert runner.run() == 3
    assert runner.result()[str(script)] == [1, 1]


@needs_bash
def test_run_drains_trace_larger_than_pipe_buffer(write_script, test_tmp_dir, clean_shellopts):
    script = write_script(
        "loop.sh",
        "i=0\nwhile [ \"$i\" -lt 10000 ]; do\n  i=$((i + 1))\ndone\n",
    )
    runner = Runner(["bash", str(script)], RunOptions(root_directory=test_tmp_dir, mute=True))

    assert runner.run() == 0
    assert runner.result()[str(script)] == [1, 10001, 10000, None]


@needs_bash
def test_run_traces_nested_scripts(write_script, test_tmp_dir, clean_shellopts):
    inner = write_script("lib/inner.sh", "echo inner\n")
    outer = write_script("outer.sh", f"bash {inner}\necho done\n")

    runner = run_script(outer, test_tmp_dir, mute=True, skip_uncovered=True)
    result = runner.result()

    assert result[str(inner)] == [1]
    assert result[str(outer)] == [1, 1]


@needs_bash
def test_run_restores_shellopts(write_script, test_tmp_dir, monkeypatch):
    monkeypatch.setenv("SHELLOPTS", "braceexpand:hashall")
    script = write_script("opts.sh", 'echo "$SHELLOPTS"\n')

    run_script(script, test_tmp_dir, mute=True)

    assert os.environ["SHELLOPTS"] == "braceexpand:hashall"


def test_shellopts_restored_when_spawn_fails(test_tmp_dir, clean_shellopts):
    runner = Runner(["/nonexistent/shcov-command"], RunOptions(root_directory=test_tmp_dir))
    with pytest.raises(OSError):
        runner.run()
    assert "SHELLOPTS" not in os.environ


@needs_bash
def test_result_includes_unexecuted_scripts(write_script, test_tmp_dir, clean_shellopts):
    script = write_script("main.sh", "echo hi\n")
    other = write_script("sub/other.sh", "# helper\necho never\n")

    result = run_script(script, test_tmp_dir, mute=True).result()

    assert result[str(script)] == [1]
    assert result[str(other)] == [None, 0]


@needs_bash
def test_skip_uncovered(write_script, test_tmp_dir, clean_shellopts):
    script = write_script("main.sh", "echo hi\n")
    write_script("sub/other.sh", "echo never\n")

    result = run_script(script, test_tmp_dir, mute=True, skip_uncovered=True).result()

    assert list(result) == [str(script)]


@needs_bash
def test_filters_drop_matching_commands(write_script, test_tmp_dir, clean_shellopts):
    script = write_script("main.sh", "echo keep\necho drop\n")

    result = run_script(script, test_tmp_dir, mute=True, filters=[r"drop"]).result()

    assert result[str(script)] == [1, None]


@needs_bash
def test_vanished_file_is_dropped_with_warning(write_script, test_tmp_dir, clean_shellopts, capsys):
    script = write_script("selfdestruct.sh", 'rm -- "$0"\n')

    result = run_script(script, test_tmp_dir, mute=True).result()

    assert str(script) not in result
    assert "has been deleted" in capsys.readouterr().err


@needs_bash
def test_result_is_memoized(write_script, test_tmp_dir, clean_shellopts):
    script = write_script("main.sh", "echo hi\n")
    runner = run_script(script, test_tmp_dir, mute=True)

    assert runner.result() is runner.result()


def test_decode_failure_keeps_partial_result(write_script, test_tmp_dir, clean_shellopts, monkeypatch, capsys):
    a = write_script("a.sh", "echo a\n")
    b = write_script("b.sh", "echo b\n")
    write_script("c.sh", "echo c\n")

    def read_then_fail(self):
        partial = {}
        for path in (a, b):
            sf = SourceFile(path)
            sf.add_command(f"echo {path.stem}", 1, 1)
            partial[path] = sf
        raise shcov_xtrace.XtraceError("Stream ended after 1 of 3 fields", partial)

    monkeypatch.setattr(shcov_xtrace.Xtrace, "read", read_then_fail)
    runner = Runner(
        [sys.executable, "-c", "pass"],
        RunOptions(root_directory=test_tmp_dir, skip_uncovered=True),
    )

    assert runner.run() == 0
    assert runner.result() == {str(a): [1], str(b): [1]}
    assert "error parsing Bash's output" in capsys.readouterr().err


@needs_bash
def test_stderr_fallback_without_xtracefd(write_script, test_tmp_dir, clean_shellopts, monkeypatch, capsys):
    monkeypatch.setattr(shell_env, "bash_xtracefd_supported", lambda bash: False)
    script = write_script("main.sh", "true\ntrue\n")

    first = run_script(script, test_tmp_dir, skip_uncovered=True)
    second = run_script(script, test_tmp_dir, skip_uncovered=True)

    assert first.result()[str(script)] == [1, 1]
    assert second.result()[str(script)] == [1, 1]
    assert capsys.readouterr().err.count("does not support BASH_XTRACEFD") == 1


@needs_bash
def test_stderr_fallback_warning_is_muted(write_script, test_tmp_dir, clean_shellopts, monkeypatch, capsys):
    monkeypatch.setattr(shell_env, "bash_xtracefd_supported", lambda bash: False)
    script = write_script("main.sh", "true\n")

    run_script(script, test_tmp_dir, mute=True, skip_uncovered=True)

    assert "BASH_XTRACEFD" not in capsys.readouterr().err
