import sys
import os

# Look in this project's folder first
project_home = os.path.dirname(os.path.abspath(__file__))
if project_home not in sys.path:
    sys.path.insert(0, project_home)

# Passenger runs the module-level 'application'
from main import create_app

application = create_app(os.environ.get('FLASK_CONFIG', 'production'))
