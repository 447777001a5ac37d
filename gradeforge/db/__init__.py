from gradeforge.db.database import get_session, init_db, session_factory
from gradeforge.db.operations import (
    delete_cards,
    get_card,
    load_cards,
    replace_all_cards,
    upsert_cards,
)

__all__ = [
    "delete_cards",
    "get_card",
    "get_session",
    "init_db",
    "load_cards",
    "replace_all_cards",
    "session_factory",
    "upsert_cards",
]
