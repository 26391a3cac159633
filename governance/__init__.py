"""
construction-governance — Financial governance core.

Modules:
    config      — YAML configuration loading and defaults
    errors      — Error taxonomy (validation, transition, conflict, ...)
    models      — Cost codes, expenses, alerts, audit entries
    store       — Versioned store with per-key single-writer locks
    catalog     — Cost-code catalog load, validation and lookup
    classifier  — Default-then-flag expense classification
    workflow    — Expense approval state machine and bulk operations
    alerts      — Financial alert evaluation, dedup and auto-resolution
    resolution  — Manual alert resolution / dismissal
    audit       — Append-only audit log, query and export
    reporter    — Excel governance workbook
    events      — Outbound state-change events
    notifier    — Webhook notification for critical alerts
    demo_data   — Seeded synthetic dataset for demo runs
    service     — GovernanceService façade
"""
