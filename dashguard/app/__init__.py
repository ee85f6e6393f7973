"""DashGuard application package."""
