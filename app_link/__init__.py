"""App Link: keeps a remote build service in sync with a local app.

Uploads the app's files once, then watches the project tree and streams
incremental changes while listening for build notifications.
"""

__version__ = "1.0.0"
__app_name__ = "App Link"
