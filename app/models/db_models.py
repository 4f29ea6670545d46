# app/models/db_models.py
"""
SQLAlchemy table definitions for deployed flows and phone routes.
The module imports the shared `metadata` from app.db.db so `connect_db()` can create tables.
"""
import sqlalchemy as sa
from app.db.db import get_metadata

metadata = get_metadata()

# One row per deployed flow version; exactly one active row per flow_id
flows = sa.Table(
    "flows",
    metadata,
    sa.Column("flow_id", sa.String(length=128), primary_key=True),
    sa.Column("version", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(length=256), nullable=True),
    sa.Column("graph_json", sa.Text, nullable=False),  # full FlowGraph as JSON
    sa.Column("active", sa.Boolean, nullable=False, default=False),
    sa.Column("updated_at", sa.String(length=64), nullable=True),
)

# Destination number -> flow
routes = sa.Table(
    "routes",
    metadata,
    sa.Column("number", sa.String(length=32), primary_key=True),
    sa.Column("flow_id", sa.String(length=128), nullable=False, index=True),
    sa.Column("flow_name", sa.String(length=256), nullable=True),
    sa.Column("voice_json", sa.Text, nullable=True),
    sa.Column("updated_at", sa.String(length=64), nullable=True),
)
