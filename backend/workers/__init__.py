# Workers: separate processes that use the DB as shared state.
# Run from backend/ with:
#   python -m workers.discovery_worker          (scheduled loop)
#   python -m workers.discovery_worker --once   (single cycle)
