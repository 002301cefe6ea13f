import hmac
import os
import sys
from functools import wraps

import click
from flask import Flask, current_app, jsonify, request

from bridge_worker import BridgeSettlementWorker
from config import INSTANCE_DIR, Config, load_routes
from exceptions import BatchFatalError
from models import BridgeRequest, db
from solana_client import SolanaBridgeClient

CRON_METHODS = ['GET', 'HEAD', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS']


def cron_auth_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get('CRON_SECRET')
        if not secret:
            return f(*args, **kwargs)

        supplied = request.headers.get('Authorization', '')
        if not hmac.compare_digest(supplied.encode(), f'Bearer {secret}'.encode()):
            current_app.logger.warning(f'Rejected unauthenticated call to {request.path}')
            return jsonify({'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)

    return decorated_function


def cron_response(status):
    response = current_app.response_class(status=status)
    # Long batches must not sit behind a buffering proxy
    response.headers['X-Accel-Buffering'] = 'no'
    return response


def get_route(app, name):
    return app.extensions['bridge_routes'].get(name)


def run_settlement(app, route):
    """Run one settlement batch for a route and return its summary."""
    factory = app.config.get('BRIDGE_CHAIN_FACTORY') or SolanaBridgeClient.from_route
    worker = BridgeSettlementWorker.from_config(route, factory, app.config, logger=app.logger)
    return worker.run()


def create_app(config_object=Config, **overrides):
    app = Flask(__name__, instance_path=INSTANCE_DIR)
    app.config.from_object(config_object)
    app.config.update(overrides)
    app.logger.setLevel(app.config['LOG_LEVEL'])

    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///') and not app.testing:
        os.makedirs(app.instance_path, exist_ok=True)

    db.init_app(app)
    app.extensions['bridge_routes'] = load_routes(app.config)

    with app.app_context():
        db.create_all()

    @app.route('/api/bridge/<route_name>/cron', methods=CRON_METHODS, provide_automatic_options=False)
    @cron_auth_required
    def bridge_cron(route_name):
        if request.method != 'GET':
            response = cron_response(405)
            response.headers['Allow'] = 'GET'
            return response

        route = get_route(app, route_name)
        if route is None:
            return jsonify({'error': f'Unknown bridge route: {route_name}'}), 404

        try:
            run_settlement(app, route)
        except BatchFatalError as e:
            app.logger.error(f'Bridge run for {route_name} aborted: {str(e)}')
            return cron_response(500)
        except Exception as e:
            app.logger.exception(f'Unexpected error in bridge run for {route_name}: {str(e)}')
            db.session.rollback()
            return cron_response(500)

        return cron_response(204)

    @app.route('/api/bridge/<route_name>/requests', methods=['GET'])
    def list_requests(route_name):
        if get_route(app, route_name) is None:
            return jsonify({'error': f'Unknown bridge route: {route_name}'}), 404

        query = BridgeRequest.query.filter_by(route=route_name)
        status = request.args.get('status')
        if status:
            status = status.upper()
            if status not in BridgeRequest.STATUSES:
                return jsonify({'error': f'Invalid status: {status}'}), 400
            query = query.filter_by(status=status)

        limit = request.args.get('limit', 100, type=int)
        requests_ = query.order_by(BridgeRequest.created_at.desc()).limit(max(1, min(limit, 500))).all()
        return jsonify([r.to_dict() for r in requests_])

    @app.route('/api/bridge/<route_name>/requests/<request_id>', methods=['GET'])
    def request_status(route_name, request_id):
        bridge_request = BridgeRequest.query.filter_by(route=route_name, id=request_id).first()
        if bridge_request is None:
            return jsonify({'error': 'Bridge request not found'}), 404
        return jsonify(bridge_request.to_dict())

    @app.route('/api/bridge/<route_name>/requests/<request_id>/retry', methods=['POST'])
    @cron_auth_required
    def retry_request(route_name, request_id):
        bridge_request = BridgeRequest.query.filter_by(route=route_name, id=request_id).first()
        if bridge_request is None:
            return jsonify({'error': 'Bridge request not found'}), 404

        try:
            bridge_request.reset_failed()
        except ValueError as e:
            return jsonify({'error': str(e)}), 409

        db.session.commit()
        app.logger.info(f'Bridge request {request_id} on {route_name} queued for another run')
        return jsonify(bridge_request.to_dict())

    @app.cli.command('settle')
    @click.argument('route_name', required=False)
    def settle_command(route_name):
        """Settle pending bridge requests for ROUTE_NAME (default route if omitted)."""
        route_name = route_name or app.config['BRIDGE_ROUTE_NAME']
        route = get_route(app, route_name)
        if route is None:
            raise click.ClickException(f'Unknown bridge route: {route_name}')

        try:
            summary = run_settlement(app, route)
        except BatchFatalError as e:
            app.logger.error(f'Bridge run for {route_name} aborted: {str(e)}')
            sys.exit(1)

        if summary['skipped']:
            click.echo(f'{route_name}: another run holds the lease, skipped')
        else:
            click.echo(
                f'{route_name}: settled={len(summary["settled"])} '
                f'failed={len(summary["failed"])} deferred={len(summary["deferred"])}'
            )

    return app


if __name__ == '__main__':
    app = create_app()
    debug_mode = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=debug_mode)
