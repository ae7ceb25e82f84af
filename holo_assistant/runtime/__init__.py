"""Speech engine and conversation orchestration."""
