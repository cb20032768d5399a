"""
extensions.py — Flask extension singletons.

Creates SQLAlchemy and the derived-view cache as module-level objects so they
can be imported anywhere without creating circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in app/__init__.py.
    3. Import `db` or `views` from here wherever needed.

The offline MutationQueue is deliberately NOT created here. It is client-local
state with its own lifecycle; callers construct one handle and pass it to the
SyncOrchestrator and OfflineClient explicitly.
"""

from flask_sqlalchemy import SQLAlchemy

from backend.app.services.derived_cache import DerivedViewCache

db = SQLAlchemy()

# Cached aggregator/optimizer results, keyed by (view, group_id).
# Every ledger write invalidates the written group's entries.
views = DerivedViewCache()
