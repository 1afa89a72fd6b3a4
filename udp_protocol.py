# udp_protocol.py

# Reserved packet type for control messages
TYPE_SYSTEM = "system"

# Control verbs carried in Data of a TYPE_SYSTEM packet
VERB_HANDSHAKE = "handshake"  # Client joining, server registers the sender
VERB_CLOSE = "close"          # Either side leaving

# Seconds a receive loop waits before re-checking its closed flag
DEFAULT_READ_TIMEOUT = 1.0
