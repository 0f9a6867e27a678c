from flask import Blueprint

montage_bp = Blueprint("montage", __name__, url_prefix="/montaze")

from crm.montage import routes  # noqa: E402,F401
