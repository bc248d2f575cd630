import logging
import os

from flask import Flask
from flask_cors import CORS


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def create_app(datastore=None):
    """Build the Flask app.

    ``datastore`` is injected as-is when given (tests pass an in-memory one);
    otherwise a PostgreSQL :class:`~foosball.datastore_pg.Datastore` is built
    from ``DATABASE_URL``.
    """
    app = Flask(__name__)

    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    app.logger.setLevel(getattr(logging, level, logging.INFO))

    if datastore is None:
        db_url = os.environ.get("DATABASE_URL")
        if not db_url:
            raise RuntimeError("DATABASE_URL is required to start the foosball API.")

        from .datastore_pg import Datastore

        datastore = Datastore(
            db_url,
            minconn=_env_int("DB_POOL_MIN", 1),
            maxconn=_env_int("DB_POOL_MAX", 10),
        )
        # Direct connections still work if the pool cannot be created
        try:
            datastore.init_pool()
        except Exception:  # pylint: disable=broad-except
            app.logger.exception("PostgreSQL pool initialization failed; continuing without pool")

    from . import routes

    app.extensions[routes.DATASTORE_KEY] = datastore

    origins = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]
    CORS(app, origins=origins or "*")

    app.register_blueprint(routes.bp)
    return app

