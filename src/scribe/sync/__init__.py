"""Consumer-side polling of job state."""
