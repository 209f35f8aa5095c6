from sqlalchemy.dialects.postgresql import JSONB
from subsync.extensions import db

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = db.JSON().with_variant(JSONB(), "postgresql")
