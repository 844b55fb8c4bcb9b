# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Landing page of the AI server.

Uploaded as is and run by systemd with the system Python.
It must not import anything but Flask and the standard library.
"""
import os

from flask import Flask
from flask import render_template_string

_page = '''<!doctype html>
<html>
<head><title>{{ title }}</title></head>
<body>
<h1>Welcome to the Flask Landing Page!</h1>
{% if links %}
<ul>
{% for name, url in links %}
<li><a href="{{ url }}">{{ name }}</a></li>
{% endfor %}
</ul>
{% endif %}
</body>
</html>
'''


def parse_links(raw: str):
    """Parse "Name=url;Name=url".

    >>> parse_links('Netdata=http://10.0.0.5:19999;Open WebUI=http://10.0.0.5:3000')
    [('Netdata', 'http://10.0.0.5:19999'), ('Open WebUI', 'http://10.0.0.5:3000')]
    >>> parse_links('')
    []
    """
    links = []
    for item in raw.split(';'):
        name, equals, url = item.partition('=')
        if equals and name.strip() and url.strip():
            links.append((name.strip(), url.strip()))
    return links


def create_app(links=None):
    app = Flask(__name__)
    if links is None:
        links = parse_links(os.environ.get('LANDING_LINKS', ''))

    @app.route('/')
    def home():
        return render_template_string(_page, title="AI server", links=links)

    @app.route('/healthz')
    def healthz():
        return 'ok'

    return app


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=int(os.environ.get('LANDING_PORT', '5050')), debug=False)
