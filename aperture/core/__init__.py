"""Orchestration core: work queue, session store, compactor and hub."""
