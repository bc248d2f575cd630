import os

from . import create_app


port = int(os.environ.get('PORT', 5000))
create_app().run(host='0.0.0.0', port=port)
