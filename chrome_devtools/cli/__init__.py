"""Command-line interface for the chrome_devtools package."""
