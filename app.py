"""
Flask Web Application for the Intake Flow Engine

Thin HTTP surface over FlowStateMachine. One endpoint per action; all
conversation state lives in the JSON stores under INTAKEFLOW_DATA_DIR.

Configuration (environment):
    INTAKEFLOW_CATALOG    Catalog JSON path (default: data/sample_catalog.json)
    INTAKEFLOW_DATA_DIR   Base directory for stores (default: outputs/intakeflow)
"""

from flask import Flask, request, jsonify
import logging
import os

from intakeflow.core.catalog import load_catalog
from intakeflow.core.flow_state_machine import FlowStateMachine
from intakeflow.errors import CatalogError, RouterNoEligibleTarget
from intakeflow.persistence import JsonFileFieldStore, JsonFilePointerStore, JsonLinesHistory
from intakeflow.utils.answer_preprocessor import ContinueIntentPreprocessor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = "data/sample_catalog.json"
DEFAULT_DATA_DIR = "outputs/intakeflow"
GENERIC_ERROR = "Something went wrong, please try again"


def create_flow(catalog_path=None, data_dir=None):
    """Build the state machine with file-backed stores"""
    catalog_path = catalog_path or os.environ.get("INTAKEFLOW_CATALOG", DEFAULT_CATALOG_PATH)
    data_dir = data_dir or os.environ.get("INTAKEFLOW_DATA_DIR", DEFAULT_DATA_DIR)

    catalog = load_catalog(catalog_path)
    return FlowStateMachine(
        catalog=catalog,
        field_store=JsonFileFieldStore(data_dir),
        pointer_store=JsonFilePointerStore(data_dir),
        history=JsonLinesHistory(data_dir),
        preprocessor=ContinueIntentPreprocessor(),
    )


def create_app(flow=None):
    """
    Application factory.

    Args:
        flow: Pre-built FlowStateMachine (tests pass one with in-memory stores)
    """
    app = Flask(__name__)
    app.config['FLOW'] = flow or create_flow()

    @app.route('/api/health', methods=['GET'])
    def health():
        catalog = app.config['FLOW'].catalog
        return jsonify({
            'status': 'ok',
            'catalog': catalog.name,
            'version': catalog.version
        })

    @app.route('/api/turn', methods=['POST'])
    def turn():
        """Submit an answer and get the next prompt"""
        data = request.get_json(silent=True) or {}
        user_id = str(data.get('user_id') or '').strip()
        if not user_id:
            return jsonify({
                'success': False,
                'error': 'user_id is required'
            }), 400

        answer = data.get('answer')
        answer = '' if answer is None else str(answer)

        try:
            result = app.config['FLOW'].process_turn(
                user_id,
                answer,
                channel=data.get('channel')
            )
        except (CatalogError, RouterNoEligibleTarget) as e:
            logger.error(f"Flow configuration error for {user_id}: {e}")
            return jsonify({'success': False, 'error': GENERIC_ERROR}), 500
        except Exception as e:
            logger.exception(f"Error processing turn for {user_id}: {e}")
            return jsonify({'success': False, 'error': GENERIC_ERROR}), 500

        payload = result.to_json()
        payload['success'] = True
        return jsonify(payload)

    @app.route('/api/reset', methods=['POST'])
    def reset():
        """Forget the user's position (collected data is kept)"""
        data = request.get_json(silent=True) or {}
        user_id = str(data.get('user_id') or '').strip()
        if not user_id:
            return jsonify({
                'success': False,
                'error': 'user_id is required'
            }), 400

        app.config['FLOW'].reset(user_id)
        return jsonify({'success': True})

    return app


if __name__ == '__main__':
    print("Starting Intake Flow Web Application...")
    print("Open browser to: http://localhost:5000")

    app = create_app()
    app.run(debug=False, host='0.0.0.0', port=5000)
