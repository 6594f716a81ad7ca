# linechatd protocol and runtime constants

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 12345

# Wire encoding; one message per line.
ENCODING = "utf-8"
LINE_TERMINATOR = "\n"

# Client commands (case-sensitive, first token of the line)
CMD_EXIT = "/exit"
CMD_PRIVATE = "/private"
CMD_GROUP = "/group"

# Message kinds
KIND_BROADCAST = "broadcast"
KIND_PRIVATE = "private"
KIND_GROUP = "group"
KIND_JOIN = "join"
KIND_LEAVE = "leave"
KIND_SYSTEM = "system"

# Kinds delivered to every connected session and to presentation sinks.
BROADCAST_KINDS = frozenset({KIND_BROADCAST, KIND_GROUP, KIND_JOIN, KIND_LEAVE})

# Session states
S_CONNECTED = "connected"
S_ACTIVE = "active"
S_CLOSED = "closed"
S_FAILED = "failed"

TERMINAL_STATES = frozenset({S_CLOSED, S_FAILED})

# Identity token layout: User_<host>_<port>_<timestamp>
IDENTITY_PREFIX = "User"
IDENTITY_TS_FORMAT = "%Y%m%d_%H%M%S"
