from __future__ import annotations

import logging
import os
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .config import EngineConfig
from .errors import ExpressionSyntaxError, ParseError, RuleEngineError
from .expressions import expression_variables
from .models import Rule
from .parser import format_rules
from .rules_engine import RuleEngine, snapshot_context

APP_NAME = "rules"
ENGINE_EXTENSION_KEY = "rule_engine"


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(RuleEngineError)
    def handle_rule_error(error: RuleEngineError) -> Any:
        status_code = 400 if isinstance(error, ParseError) else 422
        app.logger.info(
            "rule_request_rejected",
            extra={"path": request.path, "kind": error.kind, "error": error.message},
        )
        return jsonify(error.to_dict()), status_code

    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload", "reason": error.description}), 400
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False)
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _engine(app: Flask) -> RuleEngine:
    return app.extensions[ENGINE_EXTENSION_KEY]


def _rules_from_body(engine: RuleEngine, body: dict[str, Any]) -> list[Rule]:
    text = body.get("text")
    if isinstance(text, str) and text.strip():
        return engine.parse_many(text)

    payload = body.get("rules")
    if not isinstance(payload, list) or not payload:
        raise BadRequest("provide rule text or a non-empty rules array")
    rules: list[Rule] = []
    for item in payload:
        if not isinstance(item, dict):
            raise BadRequest("each rule must be a JSON object")
        rule = Rule.from_dict(item)
        engine.validate(rule)
        rules.append(rule)
    return rules


def _calculation_variables(app: Flask, rule: Rule) -> list[str] | None:
    try:
        return expression_variables(rule.calculation.expression)
    except ExpressionSyntaxError as exc:
        app.logger.warning("calculation_not_parseable", extra={"rule_name": rule.name, "error": str(exc)})
        return None


def create_app(config: EngineConfig | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, APP_NAME)
    _configure_error_handlers(app)
    app.extensions[ENGINE_EXTENSION_KEY] = RuleEngine.from_config(config or EngineConfig.from_env())

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/rules/parse")
    def parse_rules() -> Any:
        body = _json_body()
        text = body.get("text")
        if not isinstance(text, str) or not text.strip():
            raise BadRequest("text must be a non-empty string")
        rules = _engine(app).parse_many(text)
        app.logger.info("rules_parsed", extra={"rule_count": len(rules)})
        return jsonify(
            {
                "rules": [{**rule.to_dict(), "variables": _calculation_variables(app, rule)} for rule in rules]
            }
        )

    @app.post("/api/rules/format")
    def format_rule_text() -> Any:
        body = _json_body()
        rules = _rules_from_body(_engine(app), {"rules": body.get("rules")})
        return jsonify({"text": format_rules(rules)})

    @app.post("/api/rules/evaluate")
    def evaluate_rules() -> Any:
        body = _json_body()
        context = body.get("context", {})
        if not isinstance(context, dict):
            raise BadRequest("context must be an object")
        engine = _engine(app)
        outcomes = engine.evaluate_many(_rules_from_body(engine, body), context)
        app.logger.info(
            "rules_evaluated",
            extra={
                "rule_count": len(outcomes),
                "fired": [outcome.rule.name for outcome in outcomes if outcome.fired],
                "context": snapshot_context(context),
            },
        )
        return jsonify({"results": [outcome.to_dict() for outcome in outcomes]})

    return app
