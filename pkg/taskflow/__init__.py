# TaskFlow: offline-first task board with client/server reconciliation
#
# Components:
#   schema.py     - Data model (Task, TaskStatus, TaskPriority) and wire codec
#   reconciler.py - Pure merge of local and server task sets
#   store.py      - SQLite persistence for the task collection
#   client.py     - REST client for the TaskFlow server
#   outbox.py     - Pending server pushes, one per task id
#   events.py     - Observer hub for task-change notifications
#   board.py      - Current snapshot, CRUD, queries and stats
#   sync.py       - One sync cycle: fetch, reconcile, persist, push
#   config.py     - YAML + environment configuration
#   cli.py        - `taskflow` command line
