import os
import sys

# Ensure that the repository root is in the PYTHONPATH so both the
# procsupervisor package and process_supervisor_main import in tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)
