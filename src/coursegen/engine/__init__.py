"""Generation task orchestration engine.

A job is a DAG of content tasks persisted in SQLite. ``JobScheduler`` drives one
job at a time: poll ready tasks, claim them with a conditional update, dispatch
them to a thread pool under a hard deadline, then record each result through
``guaranteed_write``. Circuit breakers and the rate limiter are plain objects
owned by the service that builds the scheduler; their state is process-local.
"""
