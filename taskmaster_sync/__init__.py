"""Real-time synchronization of TaskMaster task files.

This package watches ``.taskmaster/tasks/tasks.json`` inside one or more
repositories and broadcasts normalized change notifications to every
connected WebSocket client.
"""

__version__ = "0.1.0"
