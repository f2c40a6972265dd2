"""Discovery, scanning and tailing of editor chat-assistant session and log files."""

__version__ = "0.1.0"
