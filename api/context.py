"""
api/context.py -- Composition root for the authentication core.

build_context() is the one place that reads Settings and constructs every
component, leaves first:

    SessionStore      (needs: session_db_url)
    SessionTokenManager (needs: SessionStore, secret, issuer, audience, TTLs)
    Protector         (needs: 64-byte master key)
    EphemeralStore    (needs: sweep interval)

The resulting AppContext is attached to app.state.context by the lifespan in
api/main.py and passed explicitly to anything that needs a component. There
is no module-level singleton: tests build their own context from their own
Settings.

Layer rule: api/ is the outermost layer and may import from auth/, secure/,
cache/, and core/. Nothing imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from auth.sessions import SessionTokenManager
from auth.store import SessionStore
from cache.store import EphemeralStore
from core.config import Settings
from secure.protector import Protector

logger = logging.getLogger("konabra.api")


@dataclass
class AppContext:
    settings: Settings
    session_store: SessionStore
    token_manager: SessionTokenManager
    protector: Protector
    state: EphemeralStore

    def close(self) -> None:
        """Release resources in reverse construction order."""
        self.state.close()
        self.session_store.close()


def build_context(settings: Settings) -> AppContext:
    """Construct every component from settings, in dependency order."""
    session_store = SessionStore(settings.session_db_url)
    try:
        token_manager = SessionTokenManager(
            session_store,
            secret=settings.secret_key,
            issuer=settings.jwt_issuer,
            audience=list(settings.jwt_audience),
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
        )
        protector = Protector(settings.master_key_bytes())
    except Exception:
        session_store.close()
        raise
    state = EphemeralStore(sweep_interval=settings.ephemeral_sweep_seconds)
    logger.info(
        "Auth core initialized (issuer=%s, access_ttl=%ss, refresh_ttl=%ss)",
        settings.jwt_issuer,
        settings.access_token_expire_seconds,
        settings.refresh_token_expire_seconds,
    )
    return AppContext(
        settings=settings,
        session_store=session_store,
        token_manager=token_manager,
        protector=protector,
        state=state,
    )
