"""
monitor.py

Exports runtime data from a Carrier ComfortZone II HVAC system to Prometheus.

Unlike a bus with a thermostat that broadcasts its state, the ComfortZone II
controller only answers questions, so each monitor polls the controller for
a status record every poll_interval seconds.
"""

import logging, prometheus_client, threading, time, yaml

from . import frames
from . import statusserver
from . import tables
from .transactions import DEFAULT_ID, Session


LOGGER = logging.getLogger('comfortzone')


class HvacMonitor:
    POLL_COUNT = prometheus_client.Counter('comfortzone_polls',
                                           'number of status polls', ['name'])
    POLL_ERRORS = prometheus_client.Counter('comfortzone_poll_errors',
                                            'number of failed status polls', ['name', 'error'])
    DESYNC_COUNT = prometheus_client.Counter('comfortzone_desyncs',
                                             'number of times garbage was skipped on the bus', ['name'])
    RECONNECT_COUNT = prometheus_client.Counter('comfortzone_reconnects',
                                                'number of stream reconnects', ['name'])
    LAST_POLL = prometheus_client.Gauge('comfortzone_last_poll_time',
                                        'time of the last successful poll', ['name'])
    SYSTEM_MODE = prometheus_client.Enum('comfortzone_system_mode',
                                         'mode selected on the controller',
                                         ['name'], states=[m.name.lower() for m in tables.SystemMode])
    EFFECTIVE_MODE = prometheus_client.Enum('comfortzone_effective_mode',
                                            'mode the controller is running in',
                                            ['name'], states=[m.name.lower() for m in tables.SystemMode])
    TEMPERATURE = prometheus_client.Gauge('comfortzone_temperature',
                                          'temperature reported by sensor',
                                          ['name', 'sensor'])
    HUMIDITY = prometheus_client.Gauge('comfortzone_humidity',
                                       'humidity in zone 1', ['name'])
    EQUIPMENT = prometheus_client.Gauge('comfortzone_equipment',
                                        '1 if the equipment is running',
                                        ['name', 'equipment'])
    FAN_ALWAYS_ON = prometheus_client.Gauge('comfortzone_fan_always_on',
                                            '1 if the fan mode is Always On', ['name'])
    ALL_MODE = prometheus_client.Gauge('comfortzone_all_mode',
                                       'zone whose settings apply to all zones, 0 if off', ['name'])
    ZONE = prometheus_client.Gauge('comfortzone_zone',
                                   'per-zone values', ['name', 'zone', 'item'])
    EQUIPMENT_NAMES = ('fan', 'compressor_1', 'compressor_2', 'aux_heat_1', 'aux_heat_2', 'reverse')

    def __init__(self, name, listener, poll_interval=60, settings=None):
        """listener is a connect string or a dict with connect, zones and id."""
        if isinstance(listener, str):
            listener = {'connect': listener}
        self.name = name
        self.path = listener['connect']
        self.zones = tables.check_zones(int(listener.get('zones', 1)))
        self.local_id = int(listener.get('id', DEFAULT_ID))
        self.poll_interval = poll_interval
        self.settings = settings or frames.BusSettings()
        self.stream, self.session = None, None
        self.lock = threading.Lock()  # serializes every use of self.session
        self.status = None

    def open(self):
        LOGGER.info(f'connecting to {self.name} at {self.path}')
        self.stream = frames.StreamFactory(self.path)
        bus = frames.Bus(self.stream, self.settings, report_crc_error=self._report_crc_error)
        self.session = Session(bus, zones=self.zones, local_id=self.local_id, settings=self.settings)
        HvacMonitor.RECONNECT_COUNT.labels(name=self.name).inc()

    def close(self):
        if self.stream is not None:
            try:
                self.stream.close()
            except OSError:
                LOGGER.exception(f'closing {self.name}')
        self.stream, self.session = None, None

    def poll(self):
        """Query the controller and publish the result. Caller handles errors."""
        with self.lock:
            if self.session is None:
                self.open()
            status = self.session.get_status_data()
        self.process_status(status)
        return status

    def request(self, function, table, row, data=b''):
        """Send one READ or WRITE on behalf of someone else, e.g. the status server."""
        with self.lock:
            if self.session is None:
                self.open()
            return self.session.send_with_reply(table, function, 0, table, row, *data)

    def process_status(self, status):
        self.status = status
        name = self.name
        HvacMonitor.POLL_COUNT.labels(name=name).inc()
        HvacMonitor.LAST_POLL.labels(name=name).set(status.time)
        for (enum, label) in ((HvacMonitor.SYSTEM_MODE, status.system_mode),
                              (HvacMonitor.EFFECTIVE_MODE, status.effective_mode)):
            if label is None:
                LOGGER.warning(f'{name} reports an unknown mode')
            else:
                enum.labels(name=name).state(label.replace(' ', '').lower())
        HvacMonitor.TEMPERATURE.labels(name=name, sensor='outside').set(status.outside_temp)
        HvacMonitor.TEMPERATURE.labels(name=name, sensor='air_handler').set(status.air_handler_temp)
        HvacMonitor.HUMIDITY.labels(name=name).set(status.zone1_humidity)
        for e in HvacMonitor.EQUIPMENT_NAMES:
            HvacMonitor.EQUIPMENT.labels(name=name, equipment=e).set(int(getattr(status, e)))
        HvacMonitor.FAN_ALWAYS_ON.labels(name=name).set(int(status.fan_mode == 'Always On'))
        HvacMonitor.ALL_MODE.labels(name=name).set(status.all_mode)
        for (i, zone) in enumerate(status.zones):
            for (item, v) in zone.as_dict().items():
                HvacMonitor.ZONE.labels(name=name, zone=str(i + 1), item=item).set(int(v))

    def _report_crc_error(self):
        HvacMonitor.DESYNC_COUNT.labels(name=self.name).inc()

    def run(self):
        with self.lock:
            self.open()  # at startup, fail if we can't open
        while True:
            try:
                self.poll()
            except (OSError, frames.TransportError, frames.EndOfStream) as e:
                LOGGER.exception('exception in status poll, reconnecting')
                HvacMonitor.POLL_ERRORS.labels(name=self.name, error=type(e).__name__).inc()
                with self.lock:
                    self.close()
                time.sleep(1)  # rate limiting
                continue
            except frames.ComfortZoneError as e:
                LOGGER.exception('exception in status poll')
                HvacMonitor.POLL_ERRORS.labels(name=self.name, error=type(e).__name__).inc()
            time.sleep(self.poll_interval)


class ComfortZone:
    def __init__(self, config):
        self.config = config
        port = self.config.get('port')
        if not port:
            self.config['port'] = 8000
        self.settings = frames.BusSettings.from_config(self.config.get('protocol'))
        self.monitors = []

    def start_metrics_server(self, port=0):
        if not port:
            port = self.config['port']
        LOGGER.info(f'serving metrics on port {port}')
        prometheus_client.start_http_server(port)

    def make_monitors(self, listeners={}):
        if not listeners:
            listeners = self.config.get('listeners') or {}
        if not listeners:
            raise frames.ComfortZoneError('no listeners configured')
        poll_interval = self.config.get('poll_interval', 60)
        self.monitors = [HvacMonitor(name, listener, poll_interval, self.settings)
                         for (name, listener) in listeners.items()]
        return self.monitors

    def start_listeners(self, listeners={}):
        for m in self.make_monitors(listeners):
            threading.Thread(target=m.run, name=m.name).start()

    def start_statusserver(self, port=0):
        if not port:
            port = self.config.get('statusserver', 0)
        if port:
            statusserver.start_statusserver(port, self.monitors)


def load_config(configfile):
    with open(configfile, 'rt') as f:
        config = yaml.safe_load(f) or {}
    if config:
        LOGGER.info(f'using configuration file {configfile}')
    else:
        LOGGER.info(f'configuration file {configfile} was empty; ignored')
    return config


def main(args):
    logging.basicConfig(level=logging.INFO)
    configfile = 'comfortzone.yml'
    if len(args) > 1:
        configfile = args[1]

    c = ComfortZone(load_config(configfile))
    c.start_metrics_server()
    c.start_listeners()
    c.start_statusserver()
    # process will not exit until all threads terminate, which is never


if __name__ == '__main__':
    import sys
    sys.exit(main(sys.argv))
