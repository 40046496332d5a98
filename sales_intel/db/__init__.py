"""Database access: source reader, transcript cache and result store."""

from .connection import Database, init_db
from .result_store import ResultStore
from .source_reader import SourceReader
from .transcript_cache import TranscriptCache

__all__ = [
    "Database",
    "init_db",
    "ResultStore",
    "SourceReader",
    "TranscriptCache",
]
