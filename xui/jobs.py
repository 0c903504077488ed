# xui/jobs.py
import datetime
import functools

from apscheduler.schedulers.background import BackgroundScheduler

import config
from .errors import XUIError
from .logger import get_logger
from .services.traffic import TrafficService
from .services.xray_service import XrayService
from .xray.access_log import AccessLogWatcher

logger = get_logger("jobs")


def _guarded(name, fn):
    """A failing run is logged and the job stays scheduled."""

    @functools.wraps(fn)
    def run():
        try:
            fn()
        except XUIError as e:
            logger.warning("job %s: %s", name, e.message)
        except Exception:
            logger.exception("job %s crashed", name)

    return run


class JobRunner:
    """Owns the background scheduler and the access log thread."""

    def __init__(self, xray: XrayService, traffic: TrafficService, watcher: AccessLogWatcher):
        self.xray = xray
        self.traffic = traffic
        self.watcher = watcher
        self.scheduler = BackgroundScheduler()

    def _add(self, name, fn, seconds, delay=None):
        kwargs = {}
        if delay is not None:
            kwargs["next_run_time"] = datetime.datetime.now() + datetime.timedelta(seconds=delay)
        self.scheduler.add_job(
            _guarded(name, fn),
            "interval",
            seconds=seconds,
            id=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **kwargs,
        )

    def _enforce_ip_limits(self):
        self.traffic.enforce_ip_limits(self.watcher.window)

    def start(self):
        self.xray.reconcile()
        self.watcher.start()

        self._add("xray-crash-probe", self.xray.crash_probe, config.CRASH_PROBE_INTERVAL)
        self._add("xray-restart", self.xray.restart_tick, config.RESTART_INTERVAL)
        self._add("xray-traffic", self.traffic.tick, config.TRAFFIC_INTERVAL, delay=config.TRAFFIC_INITIAL_DELAY)
        self._add("ip-limit", self._enforce_ip_limits, config.IP_LIMIT_INTERVAL)
        self.scheduler.start()
        logger.info("background jobs started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.watcher.stop()
        self.xray.shutdown()
        self.traffic.api.close()
        logger.info("background jobs stopped")
