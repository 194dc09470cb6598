"""Turn execution: orchestration, compaction and cancellation."""
