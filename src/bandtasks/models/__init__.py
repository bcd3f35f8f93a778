"""Data models — work items, membership, and refusals."""
