# backend/wsgi.py
from shopcore import create_app

app = create_app()
