from flask import Blueprint, current_app, send_from_directory

bp = Blueprint("api", __name__, url_prefix="/api")
media_bp = Blueprint("media", __name__)


@media_bp.route("/media/<path:key>")
def media(key: str):
    return send_from_directory(current_app.config["MEDIA_ROOT"], key)


from . import routes  # noqa: E402,F401
