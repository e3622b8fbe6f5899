"""Resumable, auditable relocation of file-backed metadata records between storage backends."""

__version__ = "0.1.0"
