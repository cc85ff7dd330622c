"""State ownership: the job registry and durable persistence of pool and history."""
