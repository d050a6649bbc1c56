"""Engine — registry, runner, executor, and rollback."""
