import sys

from backends import build_backend
from errors import ConfigurationError, PersistenceError
from settings import Settings
from store import parse_snapshot

try:
    settings = Settings.from_env()
except ConfigurationError as e:
    print("❌ Bad configuration:", e)
    sys.exit(2)

print("SNAPSHOT_BACKEND =", settings.snapshot_backend)
print("SNAPSHOT_PATH    =", settings.snapshot_path)
print("SNAPSHOT_URL     =", settings.snapshot_url or "(unset)")

backend = build_backend(settings)

# Read the latest snapshot without touching it
try:
    blob = backend.get_latest_blob()
except PersistenceError as e:
    print("❌ Cannot reach", backend.describe(), "-", e)
    sys.exit(1)

if blob is None:
    print("ℹ️ No snapshot yet at", backend.describe())
    sys.exit(0)

try:
    data = parse_snapshot(blob)
except PersistenceError as e:
    print("❌ Snapshot exists but is unreadable:", e)
    sys.exit(1)

print("✅ Snapshot OK:", len(data["articles"]), "articles,", len(data["users"]), "users")
