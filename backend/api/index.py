# api/index.py  (serverless Python function entrypoint)
# Re-exports the read API; routes already carry the `/api` prefix (e.g. /api/insights).
from app import app  # noqa: F401
