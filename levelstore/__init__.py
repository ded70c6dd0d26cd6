"""Storage layer of a LevelDB-style key/value store: options, file and memory storage, manifest records and sorted tables."""

__version__ = "0.1.0"

__all__ = [
    "options",
    "storage",
    "memstorage",
    "filestorage",
    "session_record",
    "format",
    "writer",
    "block",
    "reader",
]