from flask import Flask, request, jsonify
from flask_cors import CORS
import logging

from spending_analyzer.ingest.config import Config
from spending_analyzer.ingest.completion import CompletionClient
from spending_analyzer.ingest.errors import StoreError
from spending_analyzer.ingest.models import UploadedDocument
from spending_analyzer.ingest.pipeline import IngestionPipeline
from spending_analyzer.store import SupabaseStore

# Setup Logging
logging.basicConfig(
    filename=Config.LOG_FILE,
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s %(levelname)s: %(message)s'
)
logging.info("Server starting up...")


app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": Config.CORS_ORIGINS}})

# Initialize Store, Completion Client & Pipeline
store = SupabaseStore()
completion = CompletionClient()
pipeline = IngestionPipeline(store, completion)


def current_user_id():
    # Set by the upstream auth layer
    return request.headers.get('X-User-Id')


@app.route('/health', methods=['GET'])
def health():
    return jsonify({
        "status": "ok",
        "store_configured": store.is_configured(),
        "completion_configured": completion.is_configured(),
        "completion_url": completion.base_url,
    })


@app.route('/spending-analyzer/upload', methods=['POST'])
def upload_statements():
    user_id = current_user_id()
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    files = [f for f in request.files.getlist('files') if f and f.filename]
    analysis_name = request.form.get('analysisName') or "Untitled Analysis"
    if not files:
        return jsonify({"error": "No files provided"}), 400

    documents = [UploadedDocument(filename=f.filename, content=f.read()) for f in files]

    try:
        result = pipeline.ingest(user_id, analysis_name, documents)
    except StoreError as e:
        logging.error(f"[Upload API] Persistence failed: {e}")
        return jsonify({"error": str(e)}), 500
    except Exception as e:
        logging.exception("[Upload API] Error")
        return jsonify({"error": str(e) or "Failed to process files"}), 500

    count = result["transactionCount"]
    if count:
        message = f"Successfully processed {len(documents)} file(s) with {count} transactions"
    else:
        message = f"No transactions could be extracted from {len(documents)} file(s)"
    logging.info(f"[Upload API] Complete: {message}")

    return jsonify({
        "analysisId": result["analysisId"],
        "transactionCount": count,
        "filesProcessed": len(documents),
        "status": "success",
        "message": message,
        "transactions": result["transactions"],
        "files": result["perFileMetadata"],
    })


@app.route('/spending-analyzer/transactions/enhance', methods=['POST'])
def enhance_transactions():
    user_id = current_user_id()
    if not user_id:
        return jsonify({"error": "Unauthorized"}), 401

    data = request.get_json(silent=True) or {}
    analysis_id = data.get('analysisId')
    if not analysis_id:
        return jsonify({"error": "analysisId is required"}), 400

    try:
        return jsonify(pipeline.reenhance(analysis_id))
    except StoreError as e:
        logging.error(f"[Merchant Enhancement] Re-enhancement failed: {e}")
        return jsonify({"error": str(e)}), 500
    except Exception as e:
        logging.exception("[Merchant Enhancement] Re-enhancement failed")
        return jsonify({"error": str(e) or "Failed to enhance transactions"}), 500


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=Config.PORT, debug=Config.FLASK_DEBUG)
