"""
transactions.py -- send a request to a device on the bus and wait for its reply
"""

import json
import logging
import sys
import time

from . import tables
from .frames import (ArgumentOutOfRange, Bus, BusSettings, ComfortZoneError,
                     Function, StreamFactory, check_byte, encode_frame)


LOGGER = logging.getLogger('comfortzone')

DEFAULT_ID = 99


class NoReplyReceived(ComfortZoneError):
    """Every send attempt went unanswered."""
    pass


class ErrorReplyReceived(ComfortZoneError):
    """The device answered with an ERROR frame, which is in self.frame."""

    def __init__(self, frame):
        super().__init__(f'Error reply received: {frame}')
        self.frame = frame


class Session:
    """One client on one bus. Not safe for concurrent callers; serialize
    access externally.

    Cross-talk is common, so after each send we let up to
    frames_per_attempt frames go by looking for our reply. A request that
    is the victim of a collision never reaches its destination, so we
    resend up to send_attempts times, sleeping retry_backoff seconds
    between attempts.
    """

    def __init__(self, bus, zones=1, local_id=DEFAULT_ID, settings=None, sleep=time.sleep):
        self.bus = bus
        self.zones = tables.check_zones(zones)
        self.local_id = check_byte('local id', local_id)
        self.settings = settings or (bus.settings if bus else BusSettings())
        self.sleep = sleep

    def get_reply_frame(self, function, request_data):
        """Read frames until we see a reply to the request we just sent.
        Returns None if none of the next frames_per_attempt frames match.
        """
        for i in range(self.settings.frames_per_attempt):
            frame = self.bus.read()
            if frame.destination != self.local_id:
                continue
            if frame.function == Function.ERROR:
                return frame
            if frame.function != Function.REPLY:
                continue
            if function == Function.READ and frame.data[0:3] != bytes(request_data[0:3]):
                LOGGER.debug(f'ignoring reply to another read: {frame}')
                continue
            return frame
        return None

    def send_with_reply(self, destination, function, *data):
        """Send a request and return the reply frame. Raises ErrorReplyReceived
        if the device refuses and NoReplyReceived if nothing answers.
        """
        func = Function.from_name(function)
        message = encode_frame(destination, self.local_id, func, list(data))
        attempts = self.settings.send_attempts
        for attempt in range(1, attempts + 1):
            # anything already buffered predates this request
            self.bus.discard_input()
            self.bus.write(message)
            frame = self.get_reply_frame(func, data)
            if frame is not None:
                if frame.function == Function.ERROR:
                    raise ErrorReplyReceived(frame)
                return frame
            LOGGER.info(f'no reply from {destination} to {func.name} (attempt {attempt} of {attempts})')
            self.sleep(self.settings.retry_backoff)
        raise NoReplyReceived(f'No reply received from {destination} after {attempts} attempts')

    def read_row(self, table, row):
        """Returns the reply data, which begins with 0, table, row."""
        return self.send_with_reply(table, Function.READ, 0, table, row).data

    def write_row(self, table, row, data):
        return self.send_with_reply(table, Function.WRITE, 0, table, row, *data)

    def get_status_data(self, raw=None):
        """Query the controller for a StatusRecord, or decode raw (a raw dump
        from an earlier StatusRecord) without touching the bus.
        """
        if not raw and self.bus is None:
            raise ComfortZoneError('no bus to query and no raw input')
        return tables.get_status_data(self.read_row, self.zones, raw)


def parse_byte(s):
    try:
        return check_byte(s, int(s, 0))
    except ValueError:
        raise ArgumentOutOfRange(f'{s} is not a number') from None


def main(args):
    """Requires either one argument or at least 5. The first argument must be
    a special file or URI of the RS-485 bus adapter.

    With one argument we read frames forever and print one line for each
    frame we see on the bus.

    Otherwise we send a READ or WRITE to dest, print the reply, and exit.
    """
    if len(args) != 2 and (len(args) < 6 or args[3] not in ('READ', 'WRITE')):
        print(f'''Usage: {args[0]} URI_of_bus_adapter
Usage: {args[0]} URI_of_bus_adapter dest READ table row
Usage: {args[0]} URI_of_bus_adapter dest WRITE table row data...''', file=sys.stderr)
        return 1

    bus = Bus(StreamFactory(args[1]), report_crc_error=lambda: print('.', end='', file=sys.stderr))
    if len(args) == 2:
        while True:
            print(bus.read())

    session = Session(bus)
    (dest, func) = (parse_byte(args[2]), args[3])
    (table, row) = (parse_byte(args[4]), parse_byte(args[5]))
    if func == 'READ':
        if len(args) != 6:
            raise ArgumentOutOfRange(f'READ takes table and row, got {args[4:]}')
        print(session.send_with_reply(dest, Function.READ, 0, table, row))
    else:
        data = [parse_byte(b) for b in args[6:]]
        reply = session.send_with_reply(dest, Function.WRITE, 0, table, row, *data)
        code = reply.data[0]
        print('Ok' if code == 0 else f'Reply code {code}')
    return 0


def status_main(args):
    """Usage: STATUS URI_of_bus_adapter zones [raw]

    Print one status record as JSON. With raw, decode it instead of querying.
    """
    if len(args) not in (3, 4):
        print(f'Usage: {args[0]} URI_of_bus_adapter zones [raw]', file=sys.stderr)
        return 1
    zones = int(args[2])
    raw = args[3] if len(args) == 4 else None
    bus = None if raw else Bus(StreamFactory(args[1]))
    status = Session(bus, zones=zones).get_status_data(raw)
    print(json.dumps(status.as_dict(), indent=2))
    return 0
