"""Main application module for the homerules automation engine.

This module serves as the entry point of the service, providing HTTP endpoints through
which external systems push entity states and events, call services, and manage
automations and scenes.
"""

from pydantic import BaseModel, Field, ValidationError
from quart import Quart, jsonify, request

from homerules.config import Settings
from homerules.core import Home
from homerules.errors import HomeRulesError
from homerules.rules.model import Automation, ServiceTarget
from homerules.rules.template import TemplateContext
from homerules.states import StateValue
from util import configure_logging


class StateUpdate(BaseModel):
    """Body of a state write"""

    state: StateValue
    attributes: dict = Field(default_factory=dict)


class ServiceRequest(BaseModel):
    """Body of a direct service call"""

    target: ServiceTarget | None = None
    data: dict = Field(default_factory=dict)


def create_app(home: Home) -> Quart:
    """Builds the HTTP application around an engine instance."""
    app = Quart(__name__)

    @app.before_serving
    async def startup():
        await home.start()

    @app.after_serving
    async def shutdown():
        await home.stop()

    @app.errorhandler(ValidationError)
    async def invalid_body(error: ValidationError):
        return jsonify({"error": error.errors(include_url=False)}), 400

    @app.get("/api/states")
    async def list_states():
        return jsonify([entity.model_dump(mode="json") for entity in home.store.all()])

    @app.get("/api/states/<entity_id>")
    async def get_state(entity_id: str):
        entity = home.store.get(entity_id)
        if entity is None:
            return jsonify({"error": f"Entity '{entity_id}' not found"}), 404
        return jsonify(entity.model_dump(mode="json"))

    @app.post("/api/states/<entity_id>")
    async def set_state(entity_id: str):
        """Endpoint through which external systems report a state change"""
        update = StateUpdate.model_validate(await request.get_json())
        try:
            home.store.set(entity_id, update.state, update.attributes)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify(home.store.get(entity_id).model_dump(mode="json"))

    @app.post("/api/events/<event_type>")
    async def fire_event(event_type: str):
        data = await request.get_json(silent=True) or {}
        matched = home.dispatcher.fire_event(event_type, data)
        return jsonify({"matched": matched})

    @app.post("/api/services/<service>")
    async def call_service(service: str):
        body = ServiceRequest.model_validate(await request.get_json(silent=True) or {})
        context = TemplateContext(home.store, {}, home.location.now)
        try:
            await home.executor.call_service(service, body.target, body.data, context)
        except HomeRulesError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"result": "success"})

    @app.get("/api/automations")
    async def list_automations():
        return jsonify(
            [
                {
                    **automation.model_dump(mode="json", by_alias=True, exclude_none=True),
                    "enabled": home.runtime.is_enabled(automation.id),
                    "running": home.runtime.running_count(automation.id),
                }
                for automation in home.runtime.automations()
            ]
        )

    @app.post("/api/automations")
    async def install_automation():
        """Endpoint for installing an automation at runtime"""
        automation = Automation.model_validate(await request.get_json())
        try:
            await home.install_automation(automation)
        except ValueError as e:
            return jsonify({"error": str(e)}), 409
        return jsonify({"result": "success"}), 201

    @app.delete("/api/automations/<automation_id>")
    async def uninstall_automation(automation_id: str):
        if not await home.uninstall_automation(automation_id):
            return jsonify({"error": f"Automation '{automation_id}' not found"}), 404
        return jsonify({"result": "success"})

    @app.post("/api/automations/<automation_id>/trigger")
    async def trigger_automation(automation_id: str):
        if home.runtime.get(automation_id) is None:
            return jsonify({"error": f"Automation '{automation_id}' not found"}), 404
        body = await request.get_json(silent=True) or {}
        task = home.runtime.trigger(
            automation_id, body.get("variables"), bool(body.get("skip_condition", False))
        )
        return jsonify({"started": task is not None})

    @app.get("/api/automations/<automation_id>/traces")
    async def automation_traces(automation_id: str):
        if home.runtime.get(automation_id) is None:
            return jsonify({"error": f"Automation '{automation_id}' not found"}), 404
        return jsonify([trace.as_dict() for trace in home.runtime.traces(automation_id)])

    @app.get("/api/services")
    async def list_services():
        return jsonify(home.services.names())

    @app.get("/api/scenes")
    async def list_scenes():
        return jsonify(
            [
                {**scene.model_dump(mode="json", exclude_none=True), "active": active}
                for scene, active in home.scenes.get_all_scenes()
            ]
        )

    @app.post("/api/scenes/<name>")
    async def activate_scene(name: str):
        try:
            home.scenes.activate(name)
        except HomeRulesError as e:
            return jsonify({"error": str(e)}), 404
        return jsonify({"result": "success"})

    return app


if __name__ == "__main__":
    settings = Settings()
    configure_logging(settings.log_level)
    app = create_app(Home(settings))
    app.run(host=settings.host, port=settings.port)
