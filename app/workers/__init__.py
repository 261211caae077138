# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration and beat schedule
#   - tasks.py: extraction, per-chunk embedding and the stale-work reaper
#
# The API process never runs extraction or embedding itself (outside the
# thread dispatcher used for local runs). Status polls hand the work to
# these tasks and return immediately.
# =============================================================================
