import os
import subprocess
import sys

import sync_worker
from pdv_server import app, PDV_DB_PATH


def start_sync_worker():
    if os.getenv('SYNC_WORKER_AUTO_START', '0') != '1':
        return None
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        return None
    script_path = os.path.join(os.path.dirname(__file__), 'sync_worker.py')
    if not os.path.exists(script_path):
        return None
    env = os.environ.copy()
    # worker drains the same queue the server writes to
    env.setdefault('PDV_DB_PATH', PDV_DB_PATH)
    env.setdefault('SYNC_INTERVAL', str(sync_worker.SYNC_INTERVAL))
    return subprocess.Popen([sys.executable, script_path], env=env)


if __name__ == '__main__':
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    worker_proc = start_sync_worker()
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        if worker_proc:
            worker_proc.terminate()
