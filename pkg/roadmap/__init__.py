# Roadmap board: objective × now/next/later planning grid backed by SQLite
#
# Components:
#   schema.py      - Data model (Card, Issue, Location, Column, Objective) and row mapping
#   store.py       - SQLite card store
#   issues.py      - Tracker issue cache with read-time filtering
#   github.py      - Paginated GitHub GraphQL issue source
#   reconciler.py  - Optimistic board operations over a durable backend
#   client.py      - HTTP backend for running the reconciler remotely
#   board.py       - Grid view model
#   config.py      - YAML + environment configuration
