import logging

from flask import Flask, jsonify
from flask_cors import CORS

from auth import auth_bp
from config import Config
from errors import register_error_handlers
from exams import exam_bp
from live import socketio
from models import db
from notifications import Notifier
from scoring import ScoringEngine


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    # Enable CORS with credentials support
    CORS(app, supports_credentials=True)
    db.init_app(app)
    socketio.init_app(app, cors_allowed_origins="*", async_mode=app.config['SOCKETIO_ASYNC_MODE'])

    notifier = Notifier(app.config, spawn=socketio.start_background_task)
    app.extensions['scoring_engine'] = ScoringEngine(
        notifier,
        grace_seconds=app.config['EXAM_SUBMIT_GRACE_SEC'],
    )

    register_error_handlers(app)
    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(exam_bp)

    @app.route('/health')
    def health():
        return jsonify({'success': True, 'status': 'ok'})

    return app


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
    socketio.run(app, debug=True, port=5000)
