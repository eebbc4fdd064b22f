"""
JerkyRank - Engagement & Achievement Engine
============================================
Turns shopper activity (searches, product views, rankings, logins,
purchases) into engagement scores, tiered achievement coins and
community leaderboards for the jerky storefront.

Package layout::

    jerkyrank/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Activity / collection / period vocabularies
    ├── errors.py          # Error taxonomy + DB error translation
    ├── database/
    │   ├── engine.py      # Three logical pools + session helpers
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default achievement catalogue
    ├── engine/
    │   ├── requirements.py # Requirement kinds + progress handlers
    │   ├── achievements.py # Tier math + award planning
    │   ├── progress.py    # Closest-unearned selection
    │   ├── streaks.py     # Calendar-day streak transitions
    │   ├── cache.py       # Leaderboard / position / profile caches
    │   ├── redis_backend.py # Shared Redis cache backend
    │   ├── retry.py       # Exponential backoff for transient errors
    │   ├── stats.py       # UserStats snapshot
    │   └── clock.py       # Injectable clock
    ├── services/
    │   ├── activity_ingestor.py    # Batched event persistence
    │   ├── score_store.py          # Period-bucketed rollup
    │   ├── metrics_service.py      # UserStats aggregation
    │   ├── achievement_service.py  # Award persistence + admin clears
    │   ├── leaderboard_service.py  # Top-N and position reads
    │   ├── classification_queue.py # Per-user serialized workers
    │   ├── warmer.py               # Startup cache warm-up
    │   └── engagement_service.py   # Boundary contracts
    └── api/
        ├── main.py        # FastAPI app
        └── routes/        # Public + admin REST endpoints
"""

__version__ = "0.1.0"
