"""Additional index creation for query performance.

These indexes complement the basic indexes defined in SQLModel Field()
declarations. They are composite indexes for the hot query patterns:
BM25 postings by term, embeddings by model, graph expansion by edge target.

Call create_additional_indexes() after Database.ensure_schema().
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Engine


ADDITIONAL_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tokens_term_chunk ON tokens(term, chunk_id)",
    "CREATE INDEX IF NOT EXISTS idx_embeddings_model_hash ON embeddings(model_id, content_hash)",
    "CREATE INDEX IF NOT EXISTS idx_files_workspace_state ON files(workspace_id, state)",
    "CREATE INDEX IF NOT EXISTS idx_graph_edges_to_kind ON graph_edges(to_id, kind)",
    "CREATE INDEX IF NOT EXISTS idx_graph_occ_symbol_role ON graph_occurrences(symbol_id, role)",
]


def create_additional_indexes(engine: Engine) -> None:
    """
    Create additional composite indexes.

    Idempotent; safe to call on every open.
    """
    with engine.connect() as conn:
        for sql in ADDITIONAL_INDEXES:
            conn.execute(text(sql))
        conn.commit()
