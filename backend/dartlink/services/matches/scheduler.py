import time

from dartlink import db, socketio
from .transitions import expire_matches


_sweeper_started = False


def run_expiry_sweep(app) -> list:
    """One sweep inside an app context; errors are logged and the session rolled back."""
    with app.app_context():
        try:
            return expire_matches()
        except Exception as exc:
            db.session.rollback()
            app.logger.error(f"[sweep-error] {exc}")
            return []


def start_expiry_sweeper(app) -> bool:
    """Start the periodic expiry sweep as a Socket.IO background task.

    - No-ops in TESTING mode unless ENABLE_SCHEDULER_IN_TESTS is set
    - No-ops when EXPIRY_SWEEP_INTERVAL_SEC is 0
    - Ensures a single sweeper per process
    """
    global _sweeper_started
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return False
    interval = int(app.config.get('EXPIRY_SWEEP_INTERVAL_SEC', 60))
    if interval <= 0 or _sweeper_started:
        return False
    _sweeper_started = True
    app.logger.info(f"[sweeper-start] interval={interval}s")

    def _worker(delay: int):
        while True:
            time.sleep(delay)
            expired = run_expiry_sweep(app)
            if expired:
                app.logger.info(f"[sweeper-tick] expired={expired}")

    socketio.start_background_task(_worker, interval)
    return True
