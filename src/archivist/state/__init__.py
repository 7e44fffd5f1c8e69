from archivist.state.models import Lease, PairState, RunRecord
from archivist.state.store import StateError, StateStore

__all__ = ["Lease", "PairState", "RunRecord", "StateError", "StateStore"]
