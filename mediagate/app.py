import time
import logging
import threading

from flask import Blueprint, Flask, Response, current_app, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .config import DOWNLOAD_JOB_RETENTION_SECONDS, Settings, resolve_bind_addr
from .errors import ApiError, ClientInputError
from .formats import list_formats
from .gate import DownloadRequest, GateContext, validate_url
from .http_utils import build_content_disposition, client_identity, sanitize_ascii_filename

# =========================
# Logging
# =========================
logger = logging.getLogger('mediagate')


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )
    logging.getLogger('yt_dlp').setLevel(logging.WARNING)


# =========================
# Request helpers
# =========================
def gate_context() -> GateContext:
    return current_app.extensions['mediagate']


def current_client() -> str:
    ctx = gate_context()
    return client_identity(request.headers, request.remote_addr, ctx.settings.trust_proxy_headers)


def json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ClientInputError('Invalid request body.')
    return data


# =========================
# API Routes
# =========================
api = Blueprint('api', __name__, url_prefix='/api')


@api.route('/health')
def health():
    return jsonify({'status': 'ok'})


@api.route('/antibot/challenge')
def create_antibot_challenge():
    return jsonify(gate_context().antibot.issue_challenge(current_client()))


@api.route('/formats', methods=['POST'])
def fetch_formats():
    url = validate_url(json_body().get('url'))
    return jsonify(list_formats(gate_context().extractor, url))


@api.route('/download', methods=['POST'])
def start_download():
    payload = DownloadRequest.from_payload(json_body())
    artifact = gate_context().gate.download(current_client(), payload)

    # The job permit is held until the body has been streamed out.
    response = Response(artifact.iter_chunks(), mimetype=artifact.content_type)
    response.call_on_close(artifact.release)
    response.headers['Content-Length'] = str(artifact.size)
    response.headers['Content-Disposition'] = build_content_disposition(artifact.filename)
    response.headers['X-Download-Filename'] = sanitize_ascii_filename(artifact.filename)
    return response


@api.route('/history', methods=['GET'])
def get_history():
    return jsonify(gate_context().history.list(current_client()))


@api.route('/history', methods=['DELETE'])
def clear_history():
    gate_context().history.clear(current_client())
    return jsonify({'status': 'ok'})


# =========================
# Error handlers
# =========================
def handle_api_error(e: ApiError):
    if e.status >= 500:
        logger.error(f'Internal error: {e.message}')
    response = jsonify(e.to_dict())
    response.status_code = e.status
    if e.retry_after_seconds is not None:
        response.headers['Retry-After'] = str(e.retry_after_seconds)
    return response


def handle_http_error(e: HTTPException):
    response = jsonify({'error': e.description or e.name})
    response.status_code = e.code or 500
    return response


def internal_error(e):
    logger.error(f'Internal error: {e}')
    return jsonify({'error': 'Internal server error'}), 500


# =========================
# Request timing / headers
# =========================
def before_request():
    ensure_bg_started(current_app)
    g.start_time = time.time()


def after_request(response):
    if hasattr(g, 'start_time'):
        duration = (time.time() - g.start_time) * 1000
        response.headers['X-Response-Time'] = f'{duration:.1f}ms'

    response.headers.update({
        'X-Robots-Tag': 'noindex, nofollow',
        'Cache-Control': 'no-cache, no-store, must-revalidate',
        'Pragma': 'no-cache',
        'Expires': '0'
    })
    return response


# Start the periodic stale sweep lazily on first request (Flask 3.x-safe)
_bg_lock = threading.Lock()


def ensure_bg_started(app: Flask) -> None:
    if app.config.get('MEDIAGATE_SWEEPER_STARTED') or not app.config.get('MEDIAGATE_START_SWEEPER', True):
        return
    with _bg_lock:
        if not app.config.get('MEDIAGATE_SWEEPER_STARTED'):
            app.extensions['mediagate'].jobs.start_sweeper()
            app.config['MEDIAGATE_SWEEPER_STARTED'] = True
            logger.info('Background cleanup thread started')


# =========================
# Flask App
# =========================
def create_app(settings: Settings | None = None, context: GateContext | None = None) -> Flask:
    if context is None:
        settings = settings or Settings.from_env()
        context = GateContext.from_settings(settings)
    settings = context.settings

    if not settings.trust_proxy_headers:
        logger.warning('TRUST_PROXY_HEADERS=false: socket IP will be used for download limits and anti-bot.')

    app = Flask(__name__)
    app.extensions['mediagate'] = context
    CORS(
        app,
        origins=settings.allowed_origins,
        methods=['GET', 'POST', 'DELETE'],
        expose_headers=['Content-Disposition', 'X-Download-Filename'],
    )

    app.register_blueprint(api)
    app.register_error_handler(ApiError, handle_api_error)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(500, internal_error)
    app.before_request(before_request)
    app.after_request(after_request)
    return app


# =========================
# Entrypoint
# =========================
def main() -> None:
    configure_logging()
    host, port = resolve_bind_addr()
    app = create_app()
    ctx = app.extensions['mediagate']
    ensure_bg_started(app)

    logger.info(f"""
Media download gate
Anti-bot: {ctx.antibot.strategy.name}
Max concurrent downloads: {ctx.settings.max_concurrent_downloads}
Auto-cleanup: {DOWNLOAD_JOB_RETENTION_SECONDS}s retention

Server starting on http://{host}:{port} ...
    """)

    try:
        app.run(
            host=host,
            port=port,
            debug=False,
            threaded=True,
            use_reloader=False
        )
    except KeyboardInterrupt:
        logger.info('Shutting down gracefully...')
    finally:
        logger.info('Performing final cleanup...')
        ctx.jobs.shutdown()
        ctx.jobs.sweep_stale()


if __name__ == '__main__':
    main()
