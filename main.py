import uvicorn

from inventrack.api import create_app
from inventrack.config import load_settings

settings = load_settings()
app = create_app(settings)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
