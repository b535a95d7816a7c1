PROGRAM_NAME = "shcov"

# Bash repeats the first character of PS4 once per level of indirection,
# so every xtrace record starts with one or more of these.
DEPTH_CHAR = "+"

# BASH_XTRACEFD first appeared in Bash 4.1.
MIN_BASH_VERSION_FOR_XTRACEFD = "4.1"

SHELL_SCRIPT_GLOB = "**/*.sh"

DEFAULT_OUTPUT_FILENAME = "coverage.json"

# Environment variables consulted at run time.
ENV_BASH = "SHCOV_BASH"
ENV_SHOW_CMDS = "SHCOV_SHOW_CMDS"
