"""Descriptor queue and remote job pipeline.

Why not a broker-backed task queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Work arrives as files in a single watch folder and is bounded by two
remote-side limits: a small number of concurrent jobs and a storage
quota that can only be estimated from the job history. Admission therefore
depends on live remote state, not on worker availability:

- A slot stays held until the remote job has been downloaded locally and
  deleted, which can take hours after the submission call returned.
- Duplicate descriptors are detected by content fingerprint, so a file
  dropped twice within an hour is submitted once.
- Transient remote failures are retried in place; remote ``error`` or
  ``canceled`` ends the job immediately.

Everything runs on one asyncio loop with in-memory state, so a restart
rescans the watch folder and resubmits whatever is still there.
"""
