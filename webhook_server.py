import logging

from flask import Flask, jsonify, request

from bitbucket_events import EVENT_KEY_HEADER, SIGNATURE_HEADER

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Reference to the reconciliation engine
pr_handler = None


def set_pr_handler(handler):
    """Set the PR handler that webhook deliveries are handed to."""
    global pr_handler
    pr_handler = handler


@app.route('/health', methods=['GET'])
def health():
    return jsonify({"status": "ok"}), 200


@app.route('/bitbucket/webhook', methods=['POST'])
def bitbucket_webhook():
    """
    Handle incoming Bitbucket webhooks.

    The delivery is acknowledged as soon as it is authenticated and
    classified; cards are updated in the background on the bot's loop.
    """
    event_key = request.headers.get(EVENT_KEY_HEADER)
    if not event_key:
        return jsonify({"error": f"Missing {EVENT_KEY_HEADER} header"}), 400

    if pr_handler is None:
        logger.error("Webhook received before the PR handler was set")
        return jsonify({"error": "not ready"}), 503

    body = request.get_data()
    signature = request.headers.get(SIGNATURE_HEADER, '')
    logger.info("Received %s webhook (%d bytes)", event_key, len(body))

    result = pr_handler.handle(event_key, body, signature)
    if not result.accepted:
        return jsonify({"error": result.message}), result.status_code
    return jsonify({"message": result.message}), 200


def run_webhook_server(host='0.0.0.0', port=5000):
    """Run the Flask server."""
    logger.info("Webhook server listening on http://%s:%s/bitbucket/webhook", host, port)
    app.run(host=host, port=port, debug=False, use_reloader=False)
