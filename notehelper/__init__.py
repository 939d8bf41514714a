"""Incremental sync of NoteHelper reading items into a SiYuan knowledge base."""

__version__ = "0.3.0"
