"""
Scheduler management endpoints.

This module contains functionality for:
- Scheduler status checking
- Starting scheduler
- Stopping scheduler
- Running a single poll on demand
"""

import logging
from flask import jsonify, request

from followup_engine.models import db
from followup_engine.services.scheduler import get_execution_scheduler
from followup_engine.utils.error_handling import handle_exception

logger = logging.getLogger(__name__)

# Import the blueprint from the package
from . import automation_bp


@automation_bp.route('/scheduler/status', methods=['GET'])
def get_scheduler_status():
    """Get the current status of the execution scheduler."""
    try:
        return jsonify(get_execution_scheduler().get_status())
    except Exception as e:
        logger.error(f"Error getting scheduler status: {str(e)}")
        return handle_exception(e, "scheduler status")


@automation_bp.route('/scheduler/start', methods=['POST'])
def start_scheduler():
    """Start the execution scheduler."""
    try:
        scheduler = get_execution_scheduler()

        if scheduler.running:
            return jsonify({'message': 'Scheduler is already running'}), 200

        scheduler.start()

        return jsonify({
            'message': 'Scheduler started successfully',
            'status': 'running'
        })

    except Exception as e:
        logger.error(f"Error starting scheduler: {str(e)}")
        return handle_exception(e, "scheduler start")


@automation_bp.route('/scheduler/stop', methods=['POST'])
def stop_scheduler():
    """Stop the execution scheduler."""
    try:
        scheduler = get_execution_scheduler()

        if not scheduler.running:
            return jsonify({'message': 'Scheduler is already stopped'}), 200

        scheduler.stop()

        return jsonify({
            'message': 'Scheduler stopped successfully',
            'status': 'stopped'
        })

    except Exception as e:
        logger.error(f"Error stopping scheduler: {str(e)}")
        return handle_exception(e, "scheduler stop")


@automation_bp.route('/scheduler/run-once', methods=['POST'])
def run_scheduler_once():
    """Process due executions once, optionally running the trigger scan first."""
    try:
        data = request.get_json(silent=True) or {}
        summary = get_execution_scheduler().run_once(scan=bool(data.get('scan', False)))
        return jsonify({
            'message': 'Scheduler poll completed',
            'summary': summary
        })

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error running scheduler poll: {str(e)}")
        return handle_exception(e, "scheduler poll")
