# Lets pytest import `shared` and `services` from the project root without an install
import sys
from pathlib import Path

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))
