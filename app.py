from flask import Flask, request, jsonify, Response
from flask_cors import CORS
import os
import logging
import sys
from datetime import datetime

from manage_server import (
    ConfigError, load_config, merge_request_config, missing_connection_fields,
    get_skip_prefix, get_sync_interval,
)
from notifications import broadcaster
from scheduler import get_scheduler
from sync_summary import get_configured_comparison

# Configure logging for better visibility
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(os.environ.get('ACCESS_SYNC_LOG', 'access_sync.log'))
    ]
)

app = Flask(__name__)
CORS(app)

app.logger.setLevel(logging.INFO)


@app.before_request
def log_request_info():
    app.logger.info(f'[REQ] {request.method} {request.path} - {request.remote_addr}')


@app.after_request
def log_response_info(response):
    app.logger.info(f'[RESP] {request.method} {request.path} - {response.status_code}')
    return response


@app.route("/")
def index():
    return jsonify({"message": "Server working!"}), 200


# ------------------ SYNC ROUTES ------------------
@app.route("/api/migrate", methods=["POST"])
def migrate():
    """Run a sync pass now and keep it running on the configured interval"""
    payload = request.get_json(silent=True) or {}
    access_conf, pg_conf = merge_request_config(load_config(), payload)
    missing = missing_connection_fields(access_conf, pg_conf)
    if missing:
        return jsonify({
            "success": False,
            "message": f"❌ Missing required parameters: {', '.join(missing)}",
        }), 400

    app.logger.info("📢 Received migration request...")
    scheduler = get_scheduler()
    try:
        result = scheduler.start_or_run_sync(access_conf, pg_conf)
    except Exception as e:
        app.logger.error(f"Migration request failed: {e}")
        return jsonify({"success": False, "message": "Something went wrong", "error": str(e)}), 500
    return jsonify(result), 200 if result["success"] else 500


@app.route("/api/stop", methods=["POST"])
def stop():
    result = get_scheduler().stop()
    return jsonify(result), 200


@app.route("/api/status")
def status():
    limit = request.args.get("limit", 20, type=int)
    data = get_scheduler().status()
    data["messages"] = broadcaster.recent(limit)
    return jsonify(data)


@app.route("/api/events")
def events():
    """Server-Sent Events stream of sync status messages"""
    q = broadcaster.subscribe()
    return Response(broadcaster.stream(q), mimetype="text/event-stream", headers={
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    })


@app.route("/api/summary")
def summary():
    config = load_config()
    access_conf, pg_conf = merge_request_config(config, {})
    missing = missing_connection_fields(access_conf, pg_conf)
    if missing:
        return jsonify({"error": f"Missing connection settings: {', '.join(missing)}"}), 400
    try:
        return jsonify(get_configured_comparison(access_conf, pg_conf, get_skip_prefix(config)))
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.errorhandler(404)
def not_found(e):
    return jsonify({"message": "Invalid url!"}), 404


@app.errorhandler(ConfigError)
def config_error(e):
    app.logger.error(f"[CONFIG] {e}")
    return jsonify({"success": False, "message": f"Invalid sync configuration: {e}"}), 500


# ------------------ MAIN ------------------
if __name__ == "__main__":
    port = int(os.environ.get("APP_PORT", 3000))
    print("=" * 60)
    print("[STARTING] ACCESS → POSTGRES SYNC")
    print("=" * 60)
    print(f"[DATE] {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"[PYTHON] {sys.version.split()[0]}")
    print("=" * 60)

    try:
        get_sync_interval(load_config())
    except ConfigError as e:
        app.logger.error(f"[CONFIG] Invalid sync configuration: {e}")
        sys.exit(1)

    try:
        print(f"[READY] Server running on http://localhost:{port}")
        app.run(host='0.0.0.0', port=port, threaded=True)
    except Exception as e:
        app.logger.error(f"Failed to start application: {e}")
        sys.exit(1)
    finally:
        get_scheduler().shutdown()
