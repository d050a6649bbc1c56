"""System adapters — apt packages and systemd services."""
