"""
Cross-process Coordination

Filesystem-backed admission control for worker processes:
- locks: atomic lock entries, counter micro-locks, PID liveness
- reaper: reclamation of locks left by crashed processes
- semaphore: unordered slot cap per resource class
- ticket_queue: FIFO admission with a concurrency window
"""
