"""Worker side of the kanban board: claim a task, drive a CLI agent, report back.

The board is the only coordination point between workers. Each worker runs a
single-threaded loop (fetch, claim, run agent, evaluate, patch) guarded by a
circuit breaker, plus a heartbeat thread so the board can tell live workers
from dead ones.
"""
