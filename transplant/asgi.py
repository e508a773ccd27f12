"""
ASGI config for the transplant project.

Order matters: configure Django before importing any Django-dependent modules.
Allocation events travel over the channel layer configured in settings;
WebSocket consumers for them live with the surrounding CRUD service.
"""
import os

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "transplant.settings")

from django.core.asgi import get_asgi_application  # noqa: E402
from channels.routing import ProtocolTypeRouter  # noqa: E402

django_asgi_app = get_asgi_application()

application = ProtocolTypeRouter({
    "http": django_asgi_app,
})
