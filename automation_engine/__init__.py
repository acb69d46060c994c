"""
Workflow Automation Engine

Execution core of a no-code automation platform: variable interpolation,
dependency-based step parallelization, a per-tenant durable job queue and a
leader-elected cron scheduler.
"""

__version__ = "1.0.0"
