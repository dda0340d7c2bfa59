from pos_config import configure_logging
from pos_server import app, _service, _settings
from sync_worker import SyncScheduler


def start_scheduler():
    svc = _service()
    scheduler = SyncScheduler(svc.engine, svc.connection, _settings.sync_interval, _settings.pull_interval)
    svc.on_enqueue = scheduler.wake
    scheduler.start()
    return scheduler


if __name__ == '__main__':
    configure_logging(_settings.log_level, prefix="pos")
    scheduler = start_scheduler()
    try:
        # the reloader would start a second scheduler against the same outbox
        app.run(host=_settings.host, port=_settings.port, debug=_settings.debug, use_reloader=False)
    finally:
        scheduler.stop()
