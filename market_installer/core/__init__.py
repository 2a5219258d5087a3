"""
Core application engine for orchestrating installation jobs.

This package contains the primary logic. The `InstallManager` drives each
job through its pipeline, while the `JobTracker` owns the job table and is
the only writer of job state.
"""
