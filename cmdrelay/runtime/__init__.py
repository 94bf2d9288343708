"""Runtime orchestration (scheduled maintenance, producer helpers).

This layer is responsible for:
- running the reaper on fixed intervals inside the API process
- enqueueing commands and waiting for their results on behalf of producers

It should remain independent from the HTTP layer (`cmdrelay.api`), so both CLI and API
can reuse the same logic.
"""
