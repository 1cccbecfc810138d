#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import logging
import os

from dotenv import find_dotenv, load_dotenv
load_dotenv(find_dotenv())

from flask import Flask, jsonify
from flask_cors import CORS

import config
from resilient import RemoteBackend
from underwrite import bp as underwrite_bp


def create_app(store=None, backend=None) -> Flask:
    """store / backend are injectable; without a store, Supabase is opened on first use."""
    logging.basicConfig(level=logging.INFO)

    app = Flask(__name__)
    CORS(app, supports_credentials=True, resources={r"/api/*": {"origins": config.CORS_ORIGINS}})
    app.secret_key = config.APP_SECRET
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_CONTENT_LENGTH

    if backend is None:
        backend = RemoteBackend.from_config()
    app.extensions["underwriting"] = {"store": store, "backend": backend}

    app.register_blueprint(underwrite_bp, url_prefix="/api/underwrite")

    @app.get("/healthz")
    def healthz():
        return jsonify({"ok": True})

    return app


app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5055"))
    app.run(host="0.0.0.0", port=port, debug=True)
