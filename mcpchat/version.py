"""Version information for mcpchat-core."""

VERSION = "0.4.0"
