"""Per-user CRM overview pipeline.

This package provides:
- WorkerScheduler: cooldown gate, self-rescheduling, admin operations
- ChangeDetector: records changed since the watermark, per entity kind
- Analyzer: LLM analysis of a change set into a Recommendation
- ActionExecutor: forecast refresh, action items, notifications
- PostgresJobQueue / JobRunner: deduplicated per-user job execution
"""
