"""notifyrelay — resilient LISTEN/NOTIFY change-notification listener.

Keeps one long-lived subscription to a push channel (PostgreSQL NOTIFY or
Redis pub/sub), reconnects with bounded retry when the link drops, and hands
every notification to a bounded worker pool so slow handlers never stall
the receiving side.
"""

__version__ = "0.1.0"
