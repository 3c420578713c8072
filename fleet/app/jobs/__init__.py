"""One-off job entrypoints.

These modules are designed to run as:

  python -m fleet.app.jobs.migrate
  python -m fleet.app.jobs.liveness_sweep

The API process runs the same sweep on an interval when ENABLE_SCHEDULER=1;
the module form is for external cron runners.
"""
