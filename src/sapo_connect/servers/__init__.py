"""HTTP collaborators for desktop and CLI hosts."""
