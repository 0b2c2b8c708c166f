import logging
from pathlib import Path

from flask import Blueprint, Flask, render_template, request, send_from_directory, abort, current_app
from flask_cors import CORS

from yolosite.config import Settings
from yolosite.filenames import FALLBACK_FILENAME, annotated_filename, sanitize_filename, is_safe_filename
from yolosite.inference import annotate_upload
from yolosite.store import UploadStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [yolosite] %(levelname)s %(message)s',
)
logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent

IMAGE_MIME_MAP = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.gif': 'image/gif',
}

MSG_NO_FILE = 'No file selected.'
MSG_SAVE_FAILED = 'Upload failed - file not saved.'
MSG_INFERENCE_FAILED = 'Upload successful but model inference failed.'

bp = Blueprint('site', __name__)


def _settings() -> Settings:
    return current_app.config['YOLOSITE']


def _store() -> UploadStore:
    return current_app.extensions['upload_store']


# --- Routes ---

@bp.route('/')
def home():
    """Serves the upload form."""
    return render_template('index.html')


@bp.route('/favicon.ico')
def favicon():
    static_folder = current_app.static_folder
    if not static_folder or not (Path(static_folder) / 'favicon.ico').exists():
        abort(404)
    return send_from_directory(static_folder, 'favicon.ico')


@bp.route('/upload', methods=['POST'])
def upload():
    """Save the posted image, run yolo on it and show both images side by side.

    Failures never surface as HTTP errors; the form is shown again with one of
    three coarse messages and the details go to the log.
    """
    image_file = request.files.get('file')
    if image_file is None or not image_file.filename:
        logger.error("No file in request")
        return render_template('index.html', message=MSG_NO_FILE)

    data = image_file.read()
    if not data:
        logger.error("Empty upload for %s", image_file.filename)
        return render_template('index.html', message=MSG_NO_FILE)

    safe_name = sanitize_filename(image_file.filename)
    if not is_safe_filename(safe_name):
        safe_name = FALLBACK_FILENAME
    logger.info("Saving: %s -> %s", image_file.filename, safe_name)

    store = _store()
    # photo.png and photo.jpg share photo_annotated.jpg, so the annotated name is locked too
    with store.lock(safe_name, annotated_filename(safe_name)):
        try:
            input_path = store.save(safe_name, data)
        except OSError as exc:
            logger.error("Upload not saved (%s)", exc)
            return render_template('index.html', message=MSG_SAVE_FAILED)

        annotated_name = annotate_upload(_settings(), store, input_path, safe_name)

    if annotated_name is None:
        return render_template('index.html', message=MSG_INFERENCE_FAILED)

    return render_template(
        'upload.html',
        original_filename=safe_name,
        annotated_filename=annotated_name,
    )


@bp.route('/uploads/<filename>')
def serve_upload(filename):
    """Serve an original or annotated image from the upload store."""
    store = _store()
    logger.info("Image request: %s", filename)

    if not store.exists(filename):
        return f"File not found: {filename}", 404, {'Content-Type': 'text/plain; charset=utf-8'}

    mimetype = IMAGE_MIME_MAP.get(Path(filename).suffix.lower())
    return send_from_directory(store.root.absolute(), filename, mimetype=mimetype)


@bp.route('/debug')
def debug_listing():
    store = _store()
    lines = [f"Uploads directory: {store.root}", 'Files:']
    lines.extend(f"  - {item.name} ({item.size} bytes)" for item in store.listing())
    return '\n'.join(lines), 200, {'Content-Type': 'text/plain; charset=utf-8'}


def create_app(settings: Settings = None) -> Flask:
    """Build the site around an explicit Settings object (defaults come from the environment)."""
    if settings is None:
        settings = Settings.from_env(PROJECT_ROOT)

    # Serve static assets from the templates folder, same as the page templates
    app = Flask(__name__, static_folder='templates', static_url_path='/static')
    CORS(app)

    app.config['YOLOSITE'] = settings
    store = UploadStore(settings.uploads_dir)
    store.ensure()
    if settings.work_dir is not None:
        Path(settings.work_dir).mkdir(parents=True, exist_ok=True)
    app.extensions['upload_store'] = store
    app.register_blueprint(bp)

    logger.info("Uploads path: %s", store.root)
    return app


app = create_app()

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000, debug=True, threaded=True)
