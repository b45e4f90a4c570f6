"""hubsync server components: authoritative state, sessions and delta broadcast.

The websocket entry point lives in :mod:`hubsync.server.app`; the in-memory
controller used by the CLI and tests lives in
:mod:`hubsync.server.reference_handlers`.
"""

__all__ = []
