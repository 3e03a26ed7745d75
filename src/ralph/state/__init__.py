from ralph.state.documents import DocumentStore
from ralph.state.json_store import JsonStateFile

__all__ = ["DocumentStore", "JsonStateFile"]
