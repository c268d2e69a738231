# Task bins: ordered To Do / In Progress / Done columns kept in sync with a record store
#
# Components:
#   schema.py   - Data model (Task, Column)
#   store.py    - RecordStore contract, snapshot feed, SQLite backend
#   remote.py   - HTTP backend talking to the board server
#   replica.py  - Local snapshot-driven replica and column partitioning
#   ordering.py - Append order and column reindexing
#   sync.py     - Sync engine: mutation and reconciliation paths
#   server.py   - Flask JSON API over the SQLite backend
#   config.py   - YAML configuration
#   cli.py      - Command line
