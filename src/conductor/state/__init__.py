from conductor.state.store import FileRunStore, RunStore

__all__ = ["FileRunStore", "RunStore"]
