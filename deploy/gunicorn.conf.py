"""
Gunicorn configuration for the matchround API.

Apply/cancel serialization uses in-process asyncio locks. With more than
one worker the partial unique index on active applications is what keeps a
user to one live application per round, and SQLite must be replaced by a
server database (DATABASE_URL).
"""
import os

bind = os.environ.get("MATCHROUND_BIND", "0.0.0.0:8000")
backlog = 2048

workers = int(os.environ.get("MATCHROUND_WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 60
keepalive = 5

accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

proc_name = "matchround"

daemon = False
pidfile = "/tmp/matchround.pid"

limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    server.log.info(f"matchround ready with {workers} worker(s)")
    if workers > 1 and "sqlite" in os.environ.get("DATABASE_URL", "sqlite").lower():
        server.log.warning("Multiple workers on SQLite: concurrent writes may hit 'database is locked'")
