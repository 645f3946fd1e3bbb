"""Command-line jobs.

  python -m api.app.jobs.rotate_logs         one rotation pass over the durable log
  python -m api.app.jobs.simulate_telemetry  send synthetic heartbeats to a running API

The API process also runs the rotation pass on its own scheduler.
"""
