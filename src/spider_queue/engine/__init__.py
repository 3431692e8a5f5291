"""Single-flight execution engine for the external collection worker.

Why not Celery / RQ / a process pool?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part is not queuing; it is supervising one long-running worker
process that reports progress as newline-delimited JSON on stdout:

- Exactly one job runs at a time. Queue order is priority then age, and a
  pause returns the interrupted item to the pending pool.
- Every worker event is persisted as a task log row in arrival order, and the
  task row is finalized from the event stream plus the process exit code.
- Crashes are repaired on the next start: tasks stuck in ``running`` are
  marked ``stopped`` ("interrupted") and orphaned queue items go back to
  ``pending``.

A broker would add an operational dependency to a single-machine,
SQLite-only tool while still needing all of the above as custom logic.
"""
