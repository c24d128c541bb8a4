from typing import Optional

from flask import Flask

from gantry.config import Config
from gantry.pipeline.gating import ApprovalRegistry
from gantry.routes import approvals_bp

__version__ = "0.1.0"


def create_app(approvals: Optional[ApprovalRegistry] = None) -> Flask:
    """Approval service exposing a run's manual gates over HTTP."""
    app = Flask(__name__)
    app.config.from_object(Config)
    app.extensions["gantry_approvals"] = approvals or ApprovalRegistry()

    app.register_blueprint(approvals_bp)

    return app
