from sprintfoundry.state.checkpoints import CheckpointCommitter, CommitError
from sprintfoundry.state.events import EventLog
from sprintfoundry.state.run_store import RunStore, RunStoreError

__all__ = ["CheckpointCommitter", "CommitError", "EventLog", "RunStore", "RunStoreError"]
