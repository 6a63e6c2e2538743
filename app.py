# Development entry point for the web proxy service. Use a WSGI server pointed at app:app in production.

import os

from webproxy import create_app

app = create_app()

if __name__ == '__main__':
    app.run(debug=False, port=int(os.getenv('PORT', 5000)), threaded=True)
