"""mdchat: chat with language models inside markdown documents."""

__version__ = "0.1.0"
