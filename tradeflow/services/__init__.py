"""Decision, workflow and integration services."""
