"""fotolokashen-sync – sign-in and reliable photo upload for fotolokashen.

Sub-packages
------------
auth
    PKCE login, encrypted token storage and the session state machine.
media
    Adaptive JPEG compression.
upload
    Three-step signed upload protocol, offline queue and upload service.

Use :func:`fotolokashen_sync.context.open_session` to get a fully wired
client.
"""

__version__ = "0.1.0"
