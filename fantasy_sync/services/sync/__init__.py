"""
Fantasy Data Sync Orchestration

Decides when sync work should run, enqueues it without duplicates and fans
out dependent work when a root task completes.

Key components:
- Conditions: season, selection, match and post-match windows
- Task queue: durable, deduplicating queue with retries and backoff
- Triggers: declarative cron/interval table gated by the windows
- Cascade engine: declarative follow-on work after completion
- Executor: workers that run domain handlers and report outcomes
- Orchestrator: manual enqueue and status queries
"""
