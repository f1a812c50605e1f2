from missionboard.state.lock import StoreLock
from missionboard.state.store import BoardStore, BoardTransaction

__all__ = ["BoardStore", "BoardTransaction", "StoreLock"]
