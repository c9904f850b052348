"""tasksync - keep your current task in sync across DevOps, 7pace and your calendar."""

__version__ = "0.1.0"
