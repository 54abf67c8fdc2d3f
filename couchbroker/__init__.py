"""
Privileged resource broker for CouchPlay split-screen sessions.

This service performs the root-only work needed to run several isolated
game sessions side by side, each as its own unprivileged OS user:
- Hands input devices to a single player (ownership + mode 0600)
- Shares the compositor's display/audio sockets through group ACLs
- Bind-mounts shared game directories into secondary users' homes
- Creates and deletes managed player accounts
- Launches session processes under another account identity
- Reverts everything it changed when it shuts down
"""

__version__ = "0.1.0"
