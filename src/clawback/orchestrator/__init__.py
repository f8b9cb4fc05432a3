"""Engine components: stores, registries, executors, scheduler and dispatch.

- Settings loaded from the environment and .env
- Structured JSON logging
- Local JSON-file persistence
- Trigger matching, cron scheduling and event fan-out
- Skill runs and orchestrated workflow runs with human-in-the-loop pauses
"""
