"""
Data Processing Scripts

This module contains the batch processing machinery:
- Worker pool that runs per-job downloads in separate processes
- Sequential import pass over downloaded jobs
- Batch outcome classification and failure summaries
"""
