# FILE: scripts/openapi_dump.py
# Usage:
#   python scripts/openapi_dump.py                 # build the app in-process
#   python scripts/openapi_dump.py http://127.0.0.1:4000/openapi.json
#     (a running server only serves the schema with TASKPAL_ENABLE_DOCS=1)
import json, sys, urllib.request

if len(sys.argv) > 1:
    doc = json.load(urllib.request.urlopen(sys.argv[1]))
else:
    from taskpal.config import Settings
    from taskpal.service_http import create_app
    from taskpal.storage import InMemoryLedgerStore
    from taskpal.task_source import StaticTaskSource

    app = create_app(Settings(enable_docs=True, store_dsn="mem://"), store=InMemoryLedgerStore(), source=StaticTaskSource())
    doc = app.openapi()
print(json.dumps(doc, indent=2))
