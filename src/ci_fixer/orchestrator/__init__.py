"""Task queue and stage orchestration for failed CI builds.

A failed build becomes a chain of typed tasks (PLAN, RETRIEVE, PATCH,
VALIDATE, PR, NOTIFY) stored in one relational database. Per-type
dispatchers claim tasks with a skip-locked compare-and-set, run the
registered handler outside any transaction and route its outcome:
advance to the next stage, loop VALIDATE back to PATCH a bounded number of
times, retry with exponential backoff, or fail the build and enqueue a
manual-intervention notification.

The queue lives in the same store as the build records, so a claim, its
status change and its audit event commit together and no broker has to be
kept consistent with the database.
"""
