"""DashGuard abuse-control service."""
