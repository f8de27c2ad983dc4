"""
WSGI entry point for Sollar.

    gunicorn app:app

Settings (SECRET_KEY, DB_PATH, SUPPRESSION_MIN_*, ...) may be put in a .env file.
"""
import os

from dotenv import load_dotenv

# Load .env before anything reads the environment
load_dotenv()

from app_factory import create_app

app = create_app(os.environ.get('APP_ENV', 'production'))


if __name__ == '__main__':
    # Debug mode controlled by FLASK_DEBUG environment variable
    debug_mode = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'
    app.run(debug=debug_mode, port=5001)
