from flask import Flask, request, jsonify

from pydeployer_engine.errors import TriggerRejected
from pydeployer_engine.logger_setup import logger as global_logger

# Global instances (will be set by create_app)
trigger_listener_instance = None
orchestrator_instance = None


def create_app(trigger_listener, orchestrator):
    global trigger_listener_instance, orchestrator_instance
    trigger_listener_instance = trigger_listener
    orchestrator_instance = orchestrator

    app = Flask(__name__)

    @app.route('/webhook', methods=['POST'])
    def receive_push():
        payload = request.get_json(silent=True)
        if payload is None:
            return jsonify({"error": "Invalid request, JSON payload expected"}), 400
        try:
            build, created = trigger_listener_instance.receive_payload(payload)
        except TriggerRejected as e:
            return jsonify({"error": e.kind, "message": e.message}), 422

        body = {"build_id": build.id, "revision": build.revision, "status": build.status.value,
                "coalesced": not created}
        return jsonify(body), (202 if created else 200)

    @app.route('/builds')
    def list_builds():
        limit = request.args.get('limit', 20, type=int)
        return jsonify(orchestrator_instance.list_builds(limit=limit))

    @app.route('/builds/<build_id>')
    def build_detail(build_id):
        build = orchestrator_instance.get_build(build_id)
        if not build:
            return jsonify({"error": "Build not found"}), 404
        return jsonify(build.to_dict())

    @app.route('/builds/<build_id>/stage')
    def build_stage(build_id):
        stage = orchestrator_instance.status(build_id)
        if not stage:
            return jsonify({"error": "Build not found"}), 404
        return jsonify(stage.to_dict())

    @app.route('/builds/<build_id>/abort', methods=['POST'])
    def abort_build(build_id):
        if orchestrator_instance.get_build(build_id) is None:
            return jsonify({"error": "Build not found"}), 404
        if not orchestrator_instance.abort(build_id, reason="Aborted via API"):
            return jsonify({"error": "Build already finished"}), 409
        global_logger.info(f"Abort of build {build_id} requested via API")
        return jsonify({"message": "Abort requested", "build_id": build_id}), 202

    return app
