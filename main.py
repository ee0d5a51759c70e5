import logging
import os
import subprocess
import sys

import stock_config as cfg
from stock_errors import SchemaError, StoreError
from stock_server import build_app


def start_scanner_agent():
    if not cfg.SCANNER_AGENT_AUTO_START:
        return None
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        return None
    script_path = os.path.join(os.path.dirname(__file__), 'scanner_agent.py')
    if not os.path.exists(script_path):
        return None
    env = os.environ.copy()
    env.setdefault('SCANNER_POST_URL', f'http://127.0.0.1:{cfg.API_PORT}/api/scan')
    return subprocess.Popen([sys.executable, script_path], env=env)


if __name__ == '__main__':
    cfg.configure_logging('stock-api')
    try:
        app = build_app(cfg.DB_PATH, cfg.CREDENTIALS_PATH)
    except (SchemaError, StoreError) as exc:
        logging.error('Local store unavailable: %s', exc)
        sys.exit(1)
    agent_proc = start_scanner_agent()
    try:
        # one sqlite handle serves every request, so requests must not overlap
        app.run(host=cfg.API_HOST, port=cfg.API_PORT, debug=False, threaded=False)
    finally:
        if agent_proc:
            agent_proc.terminate()
