from conductor.state.models import RunEvent, RunRecord
from conductor.state.store import RunHistoryStore, StateStoreError

__all__ = ["RunEvent", "RunHistoryStore", "RunRecord", "StateStoreError"]
