"""
frames.py -- framing protocol for the Carrier ComfortZone II HVAC bus.

Frames look like this on the wire:

  dest 0 source 0 length 0 0 function data... crc-lo crc-hi

There is no start-of-frame marker. The only way to find a frame boundary is
to find a run of bytes whose CRC16 (including the trailing checksum) is zero.

Layout adapted from https://github.com/nebulous/infinitude/blob/master/lib/CarBus/Frame.pm
"""

import serial

import logging
import socket
import struct

from collections import namedtuple
from enum import IntEnum


LOGGER = logging.getLogger('comfortzone')

HEADER_SIZE = 8
PROTOCOL_SIZE = 10  # header plus 2 byte checksum
MIN_MESSAGE_SIZE = PROTOCOL_SIZE + 1
MAX_MESSAGE_SIZE = PROTOCOL_SIZE + 255


class ComfortZoneError(Exception):
  pass


class FrameTooShort(ComfortZoneError):
  """Not enough bytes are buffered to hold the frame."""
  pass


class ChecksumInvalid(ComfortZoneError):
  """The bytes at this position are not a valid frame."""
  pass


class TransportError(ComfortZoneError):
  pass


class EndOfStream(ComfortZoneError):
  pass


class InvalidFunction(ComfortZoneError):
  pass


class InvalidIndex(ComfortZoneError):
  pass


class ArgumentOutOfRange(ComfortZoneError):
  pass


class BusSettings:
  """Protocol constants for one connection. Passed to Bus and Session at
  construction.
  """

  def __init__(self, min_message_size=MIN_MESSAGE_SIZE, max_message_size=MAX_MESSAGE_SIZE,
               send_attempts=5, frames_per_attempt=5, retry_backoff=3.0):
    if min_message_size < MIN_MESSAGE_SIZE or max_message_size > MAX_MESSAGE_SIZE:
      raise ArgumentOutOfRange(f'message sizes {min_message_size}..{max_message_size}')
    if min_message_size > max_message_size:
      raise ArgumentOutOfRange(f'message sizes {min_message_size}..{max_message_size}')
    if send_attempts < 1 or frames_per_attempt < 1 or retry_backoff < 0:
      raise ArgumentOutOfRange(
        f'send_attempts={send_attempts} frames_per_attempt={frames_per_attempt} retry_backoff={retry_backoff}')
    self.min_message_size = min_message_size
    self.max_message_size = max_message_size
    self.send_attempts = send_attempts
    self.frames_per_attempt = frames_per_attempt
    self.retry_backoff = retry_backoff

  @classmethod
  def from_config(cls, config):
    """config is a dict, e.g. the protocol section of the YAML configuration."""
    config = config or {}
    known = ('min_message_size', 'max_message_size', 'send_attempts',
             'frames_per_attempt', 'retry_backoff')
    unknown = set(config) - set(known)
    if unknown:
      raise ComfortZoneError(f'unknown protocol settings {sorted(unknown)}')
    return cls(**config)

  def __repr__(self):
    return (f'BusSettings(min_message_size={self.min_message_size}, '
            f'max_message_size={self.max_message_size}, send_attempts={self.send_attempts}, '
            f'frames_per_attempt={self.frames_per_attempt}, retry_backoff={self.retry_backoff})')


class SerialStream:
  """Connect to a serial port. The controller bus runs at 9600 8N1."""

  def __init__(self, path, baudrate=9600):
    self.path = path
    self.baudrate = baudrate
    self.ser = None
    self.open()

  def open(self):
    assert self.ser is None, self.ser
    self.ser = serial.Serial(self.path, self.baudrate)

  def read(self, numbytes):
    """Block until at least one byte arrives, then return what is waiting."""
    return self.ser.read(max(1, min(numbytes, self.ser.in_waiting)))

  def write(self, data):
    self.ser.write(data)

  def discard_input(self):
    self.ser.reset_input_buffer()

  def close(self):
    self.ser.close()
    self.ser = None


class FileStream:
  """Read a local capture file. Writes are discarded."""

  def __init__(self, path):
    self.path = path
    self.file = None
    self.open()

  def open(self):
    assert self.file is None, self.file
    self.file = open(self.path, mode='rb')

  def read(self, numbytes):
    return self.file.read(numbytes)

  def write(self, data):
    LOGGER.debug(f'{self.path} is read-only; dropped {len(data)} bytes')

  def discard_input(self):
    """A capture holds the whole conversation, so nothing in it is stale."""
    pass

  def close(self):
    self.file.close()
    self.file = None


class SocketStream:
  """Connect to a TCPv4 socket, usually an Ethernet/RS-485 bridge."""

  def __init__(self, host, port, timeout=10):
    # create a blocking TCP connection
    self.hostport = (host, port)
    self.timeout = timeout
    self.sock = None
    self.open()

  def open(self):
    assert self.sock is None, self.sock
    self.sock = socket.create_connection(self.hostport, timeout=self.timeout)

  def read(self, numbytes):
    """Raises socket.timeout if no data is received within the timeout.
    If read() returns b'', the remote end closed the connection cleanly.
    """
    return self.sock.recv(numbytes)

  def write(self, data):
    self.sock.sendall(data)

  def discard_input(self):
    """Drop whatever the bridge has already sent us."""
    self.sock.setblocking(False)
    try:
      while self.sock.recv(4096):
        pass
    except BlockingIOError:
      pass
    finally:
      self.sock.settimeout(self.timeout)

  def close(self):
    self.sock.close()
    self.sock = None


def StreamFactory(where):
  """
  where is a path to a serial device, host:port of a TCP bridge, or a URL
  with a scheme of telnet://, file:// or localfile://.
  """
  (scheme, sep, rest) = where.partition('://')
  if not sep:
    if ':' in where:
      (host, colon, port) = where.rpartition(':')
      return SocketStream(host, int(port))
    return SerialStream(where)
  if scheme == 'file':
    return SerialStream(rest)
  if scheme == 'localfile':
    return FileStream(rest)
  if scheme == 'telnet':
    (host, colon, port_no_default) = rest.partition(':')
    port = int(port_no_default) if colon else 23
    return SocketStream(host, port)
  raise ComfortZoneError(f'unknown scheme {scheme} in StreamFactory({where})')


class Function(IntEnum):
  REPLY = 0x06
  READ = 0x0b
  WRITE = 0x0c
  ERROR = 0x15

  @staticmethod
  def lookup(code):
    """Return the Function for code, or UnknownFunction(code)."""
    try:
      return Function(code)
    except ValueError:
      return UnknownFunction(code)

  @staticmethod
  def from_name(name):
    """Accepts a Function or a function name in any case."""
    if isinstance(name, Function):
      return name
    if isinstance(name, str):
      try:
        return Function[name.upper()]
      except KeyError:
        pass
    raise InvalidFunction(f'invalid function: {name}')


class UnknownFunction(namedtuple('UnknownFunction', ['code'])):
  """A function byte that is not in Function. Passed through, not rejected."""
  __slots__ = ()

  @property
  def name(self):
    return f'UNKNOWN({self.code:#04x})'


def check_byte(name, value):
  if not isinstance(value, int) or not 0 <= value <= 255:
    raise ArgumentOutOfRange(f'{name} {value!r} is not a byte')
  return value


def encode_frame(destination, source, function, data=b''):
  """Return the wire bytes of a frame, checksum included."""
  func = Function.from_name(function)
  check_byte('destination', destination)
  check_byte('source', source)
  if isinstance(data, (bytes, bytearray)):
    data = bytes(data)
  else:
    data = bytes([check_byte('data', b) for b in data])
  if len(data) > 255:
    raise ArgumentOutOfRange(f'{len(data)} data bytes will not fit in a frame')
  message = bytes([destination, 0, source, 0, len(data), 0, 0, func]) + data
  return message + struct.pack('<H', CRC16().calculate(message))


def decode_frame(buf, offset=0):
  """Decode the frame starting at buf[offset]. Raises FrameTooShort if buf
  does not hold the whole frame and ChecksumInvalid if it isn't a frame.
  """
  if len(buf) < offset + 5:
    raise FrameTooShort(f'{len(buf) - offset} bytes')
  end = offset + buf[offset + 4] + PROTOCOL_SIZE
  if len(buf) < end:
    raise FrameTooShort(f'{len(buf) - offset} of {end - offset} bytes')
  framebytes = bytes(buf[offset:end])
  if framebytes[4] == 0 or CRC16().calculate(framebytes) != 0:
    raise ChecksumInvalid(bytestohex(framebytes))
  return Frame(framebytes)


class Frame:
  """A validated frame. Immutable: everything is derived from framebytes."""

  __slots__ = ('_framebytes',)

  def __init__(self, framebytes):
    framebytes = bytes(framebytes)
    # frame is 8 byte header, length data bytes, and 2 byte CRC
    assert len(framebytes) >= MIN_MESSAGE_SIZE, len(framebytes)
    assert len(framebytes) == framebytes[4] + PROTOCOL_SIZE, (len(framebytes), framebytes[4])
    object.__setattr__(self, '_framebytes', framebytes)

  def __setattr__(self, name, value):
    raise AttributeError('Frame is immutable')

  @property
  def framebytes(self):
    return self._framebytes

  @property
  def destination(self):
    return self._framebytes[0]

  @property
  def source(self):
    return self._framebytes[2]

  @property
  def length(self):
    return self._framebytes[4]

  @property
  def func(self):
    """The raw function byte."""
    return self._framebytes[7]

  @property
  def function(self):
    return Function.lookup(self.func)

  @property
  def data(self):
    return self._framebytes[HEADER_SIZE:HEADER_SIZE + self.length]

  @property
  def checksum(self):
    return struct.unpack('<H', self._framebytes[-2:])[0]

  def is_crc_valid(self):
    return CRC16().calculate(self._framebytes) == 0

  def __eq__(self, other):
    if not isinstance(other, Frame):
      return NotImplemented
    return self._framebytes == other._framebytes

  def __hash__(self):
    return hash(self._framebytes)

  def __repr__(self):
    return f'Frame({self._framebytes!r})'

  def __str__(self):
    data = '.'.join(str(b) for b in self.data)
    return f'{self.source:02d} -> {self.destination:02d}  {self.function.name.lower():<5s}  {data}'


class Bus:
  """Parses the stream into frames.

  After creating an instance, call read() repeatedly to read entire frames.
  Collisions are expected, so every read() searches the whole buffer for
  the first run of bytes that passes the checksum.

  report_crc_error, if given, is called whenever garbage is skipped.
  """

  def __init__(self, stream, settings=None, report_crc_error=None):
    self.stream = stream
    self.settings = settings or BusSettings()
    self.report_crc_error = report_crc_error
    self.buf = b''
    self.short = False

  def feed(self, data):
    self.buf += data

  def _fill(self):
    try:
      readbytes = self.stream.read(self.settings.max_message_size)
    except OSError as e:
      raise TransportError(f'read failed: {e}') from e
    if not readbytes:
      raise EndOfStream('connection closed [no data] while reading')
    self.feed(readbytes)

  def extract(self):
    """Scan the buffer once. Return the first valid frame, consuming the
    buffer through its end, or None if no offset holds a valid frame.
    """
    last = len(self.buf) - self.settings.min_message_size
    for offset in range(0, last + 1):
      try:
        frame = decode_frame(self.buf, offset)
      except (FrameTooShort, ChecksumInvalid):
        continue
      if offset:
        LOGGER.debug(f'skipped {offset} bytes before frame: {bytestohex(self.buf[:offset])}')
        if self.report_crc_error:
          self.report_crc_error()
      self.buf = self.buf[offset + len(frame.framebytes):]
      return frame
    return None

  def read(self):
    """Return the next valid frame, reading from the stream as needed and
    leaving any residual data in self.buf.

    Raises EndOfStream if the remote end closes the connection and
    TransportError if the stream fails.
    """
    while True:
      if self.short or not self.buf:
        # empty, too short, or long enough but with no valid frame yet
        self._fill()
        self.short = False
      if len(self.buf) < self.settings.min_message_size:
        self.short = True
        continue
      frame = self.extract()
      if frame is not None:
        return frame
      self.short = True

  def discard_input(self):
    """Forget buffered bytes and drop anything waiting in the stream. Call
    before sending a request so that replies are looked for only in traffic
    that follows it.
    """
    if self.buf:
      LOGGER.debug(f'discarding {len(self.buf)} buffered bytes')
    self.buf = b''
    self.short = False
    try:
      self.stream.discard_input()
    except OSError as e:
      raise TransportError(f'discard failed: {e}') from e

  def write(self, data):
    assert data
    try:
      self.stream.write(data)
    except OSError as e:
      raise TransportError(f'write failed: {e}') from e


def bytestohex(rbytes):
  return ''.join(['%02x' % b for b in rbytes]) if rbytes else str(rbytes)


class CRC16:
  """Table based CRC-16/ARC calculation from
     http://www.digi.com/wiki/developer/index.php/Python_CRC16_Modbus_DF1
  """
  TABLE = (
    0x0000, 0xC0C1, 0xC181, 0x0140, 0xC301, 0x03C0, 0x0280, 0xC241,
    0xC601, 0x06C0, 0x0780, 0xC741, 0x0500, 0xC5C1, 0xC481, 0x0440,
    0xCC01, 0x0CC0, 0x0D80, 0xCD41, 0x0F00, 0xCFC1, 0xCE81, 0x0E40,
    0x0A00, 0xCAC1, 0xCB81, 0x0B40, 0xC901, 0x09C0, 0x0880, 0xC841,
    0xD801, 0x18C0, 0x1980, 0xD941, 0x1B00, 0xDBC1, 0xDA81, 0x1A40,
    0x1E00, 0xDEC1, 0xDF81, 0x1F40, 0xDD01, 0x1DC0, 0x1C80, 0xDC41,
    0x1400, 0xD4C1, 0xD581, 0x1540, 0xD701, 0x17C0, 0x1680, 0xD641,
    0xD201, 0x12C0, 0x1380, 0xD341, 0x1100, 0xD1C1, 0xD081, 0x1040,
    0xF001, 0x30C0, 0x3180, 0xF141, 0x3300, 0xF3C1, 0xF281, 0x3240,
    0x3600, 0xF6C1, 0xF781, 0x3740, 0xF501, 0x35C0, 0x3480, 0xF441,
    0x3C00, 0xFCC1, 0xFD81, 0x3D40, 0xFF01, 0x3FC0, 0x3E80, 0xFE41,
    0xFA01, 0x3AC0, 0x3B80, 0xFB41, 0x3900, 0xF9C1, 0xF881, 0x3840,
    0x2800, 0xE8C1, 0xE981, 0x2940, 0xEB01, 0x2BC0, 0x2A80, 0xEA41,
    0xEE01, 0x2EC0, 0x2F80, 0xEF41, 0x2D00, 0xEDC1, 0xEC81, 0x2C40,
    0xE401, 0x24C0, 0x2580, 0xE541, 0x2700, 0xE7C1, 0xE681, 0x2640,
    0x2200, 0xE2C1, 0xE381, 0x2340, 0xE101, 0x21C0, 0x2080, 0xE041,
    0xA001, 0x60C0, 0x6180, 0xA141, 0x6300, 0xA3C1, 0xA281, 0x6240,
    0x6600, 0xA6C1, 0xA781, 0x6740, 0xA501, 0x65C0, 0x6480, 0xA441,
    0x6C00, 0xACC1, 0xAD81, 0x6D40, 0xAF01, 0x6FC0, 0x6E80, 0xAE41,
    0xAA01, 0x6AC0, 0x6B80, 0xAB41, 0x6900, 0xA9C1, 0xA881, 0x6840,
    0x7800, 0xB8C1, 0xB981, 0x7940, 0xBB01, 0x7BC0, 0x7A80, 0xBA41,
    0xBE01, 0x7EC0, 0x7F80, 0xBF41, 0x7D00, 0xBDC1, 0xBC81, 0x7C40,
    0xB401, 0x74C0, 0x7580, 0xB541, 0x7700, 0xB7C1, 0xB681, 0x7640,
    0x7200, 0xB2C1, 0xB381, 0x7340, 0xB101, 0x71C0, 0x7080, 0xB041,
    0x5000, 0x90C1, 0x9181, 0x5140, 0x9301, 0x53C0, 0x5280, 0x9241,
    0x9601, 0x56C0, 0x5780, 0x9741, 0x5500, 0x95C1, 0x9481, 0x5440,
    0x9C01, 0x5CC0, 0x5D80, 0x9D41, 0x5F00, 0x9FC1, 0x9E81, 0x5E40,
    0x5A00, 0x9AC1, 0x9B81, 0x5B40, 0x9901, 0x59C0, 0x5880, 0x9841,
    0x8801, 0x48C0, 0x4980, 0x8941, 0x4B00, 0x8BC1, 0x8A81, 0x4A40,
    0x4E00, 0x8EC1, 0x8F81, 0x4F40, 0x8D01, 0x4DC0, 0x4C80, 0x8C41,
    0x4400, 0x84C1, 0x8581, 0x4540, 0x8701, 0x47C0, 0x4680, 0x8641,
    0x8201, 0x42C0, 0x4380, 0x8341, 0x4100, 0x81C1, 0x8081, 0x4040
  )

  def _calculate_one_cycle(self, b, crc):
    """Given a new byte and previous CRC-16, return the new CRC-16."""
    crc = (crc >> 8) ^ self.TABLE[(crc ^ b) & 0xFF]
    return crc & 0xFFFF

  def calculate(self, bytesin, crc=0):
    for b in bytesin:
      crc = self._calculate_one_cycle(b, crc)
    return crc
