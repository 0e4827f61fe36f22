"""
Lazy tabular access to partitioned parquet datasets.

This package contains:
- Predicate and aggregation descriptors
- Lazy datasets with partition-aware opening
- Scan planning and execution
"""
