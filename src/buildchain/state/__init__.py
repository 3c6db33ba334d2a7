from buildchain.state.facts import FactStore, JsonFactStore, MemoryFactStore, StateError
from buildchain.state.sessions import SessionMarker, SessionStore

__all__ = [
    "FactStore",
    "JsonFactStore",
    "MemoryFactStore",
    "SessionMarker",
    "SessionStore",
    "StateError",
]
