"""
Line-level relevance check for Bash sources.

This is deliberately not a parser. A line either may carry coverage or it
may not; ambiguous structural syntax is treated as not relevant, because a
line wrongly marked relevant shows up as uncovered no matter what ran.
"""

import re

# Lines starting with a comment or the `function` keyword are irrelevant for
# coverage. The keyword must be a whole word: `function_name args` is a call.
IGNORE_START_WITH = re.compile(r"\A(?:#|function\b)")

# Lines ending with one of these are irrelevant for coverage.
IGNORE_END_WITH = ("(",)

# Lines consisting only of one of these keywords are irrelevant for coverage.
IGNORE_IS = frozenset("esac if then else elif fi while do done { } ;;".split())

# A function declared without the `function` keyword, e.g. `name() {`.
BARE_FUNCTION_DECLARATION = re.compile(r"\A\w+\(\)")


def relevant(line: str) -> bool:
    """True if `line` (a raw physical line, terminator included or not)
    can carry coverage."""
    line = line.strip()

    return (
        line != ""
        and line not in IGNORE_IS
        and IGNORE_START_WITH.match(line) is None
        and not line.endswith(IGNORE_END_WITH)
        and BARE_FUNCTION_DECLARATION.match(line) is None
    )
