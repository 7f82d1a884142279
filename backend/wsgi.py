# Overview: WSGI entry point; also the FLASK_APP target for the CLI.

from marketplace import create_app

app = create_app()
