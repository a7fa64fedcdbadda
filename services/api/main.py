# uvicorn services.api.main:app --host 0.0.0.0 --port 8000
from services.api.app import create_app

app = create_app()
