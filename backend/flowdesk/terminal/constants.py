READ_CHUNK_SIZE = 4096
DEFAULT_COLS = 80
DEFAULT_ROWS = 24
TERM_NAME = "xterm-256color"

POSIX_FALLBACK_SHELL = "/bin/bash"
WINDOWS_FALLBACK_SHELL = "cmd.exe"

SPAWN_FAILED_EXIT_CODE = -1
SPAWN_ERROR_TEMPLATE = "\x1b[31mFailed to start terminal: {error}\x1b[0m\r\n"
