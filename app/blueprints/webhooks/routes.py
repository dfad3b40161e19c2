"""
Webhook routes - Stripe subscription event receiver.
2 routes: webhook, health.
"""
from flask import current_app, jsonify, request

from app.blueprints.webhooks import webhooks_bp
from app.extensions import limiter
from app.services.errors import SignatureVerificationError, WebhookError
from app.services.webhook_service import Outcome, WebhookService


def _webhook_rate_limit():
    return current_app.config.get('WEBHOOK_RATE_LIMIT', '100 per minute')


@webhooks_bp.route('/webhook', methods=['POST'])
@limiter.limit(_webhook_rate_limit)
def webhook():
    """Handle Stripe webhook events.

    2xx tells Stripe the event is handled; anything else makes it redeliver.
    """
    payload = request.get_data()
    sig_header = request.headers.get('Stripe-Signature', '')

    try:
        result = WebhookService.handle_webhook_event(payload, sig_header)
    except SignatureVerificationError as e:
        current_app.logger.warning('Webhook signature verification failed: %s', e.message)
        return jsonify({'error': e.message}), 400
    except WebhookError as e:
        log = current_app.logger.error if e.retryable else current_app.logger.warning
        log('Webhook handler failed (%s): %s', type(e).__name__, e.message)
        return jsonify({'error': 'Webhook handler failed', 'message': e.message}), e.status_code
    except Exception as e:
        current_app.logger.exception('Webhook processing error')
        return jsonify({'error': 'Webhook handler failed', 'message': str(e)}), 500

    current_app.logger.info(
        'Webhook processed: %s (status=%s, handled=%s)',
        result.event_type, result.outcome.value, result.handled,
    )

    if result.outcome == Outcome.REJECTED:
        return jsonify({'error': result.message, **result.to_dict()}), 400

    if result.outcome == Outcome.BLOCKED:
        return jsonify(result.to_dict()), 200

    return jsonify({'received': True, **result.to_dict()}), 200


@webhooks_bp.route('/health')
@limiter.exempt
def health():
    """Liveness probe."""
    return jsonify({'status': 'ok'}), 200
