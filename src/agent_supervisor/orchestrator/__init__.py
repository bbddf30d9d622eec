"""Supervisor for autonomous coding agents working a task queue.

Why not a job queue library?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not queuing, it is the boundary with agents that
report their own success. Responsibilities no generic queue covers:

- Per-attempt isolated git worktrees on dedicated branches, with artifact
  sync back to the shared ``.supervisor/`` directory before teardown.
- Plausibility validation of self-reported state records, and a retry loop
  that feeds the concrete issues back into the next attempt.
- A bounded retry ceiling that escalates to human review instead of
  looping forever.

The task list is static and small, state lives in one JSON file per task,
and the pool is a ``ThreadPoolExecutor`` gated by ``ConcurrencyLimiter``.
"""
