from beanloop.state.roots import ResolvedRoot, RootTracker
from beanloop.state.store import StateError, StateStore

__all__ = ["ResolvedRoot", "RootTracker", "StateError", "StateStore"]
