"""
tables.py

Table/row layout of the ComfortZone II controller and the status decoder.

Every offset below is an index into the data of a READ reply, which starts
with the three bytes 0, table, row. The offsets were found by watching the
controller, not from documentation.
"""

import base64
import binascii
import time

from enum import IntEnum

from .frames import ArgumentOutOfRange, ComfortZoneError, InvalidIndex


class IncompleteRawInput(ComfortZoneError):
  pass


MAX_ZONES = 8

# every row get_status_data() needs, as (table, row)
STATUS_ROWS = [(9, 3), (9, 4), (9, 5), (1, 9), (1, 12), (1, 16), (1, 17), (1, 18), (1, 24)]

WEEKDAY = ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat']


class SystemMode(IntEnum):
  HEAT = 0
  COOL = 1
  AUTO = 2
  EHEAT = 3  # emergency heat
  OFF = 4

  @property
  def label(self):
    return 'E Heat' if self == SystemMode.EHEAT else self.name.capitalize()

  @staticmethod
  def label_for(value):
    try:
      return SystemMode(value).label
    except ValueError:
      return None


# table 9 is the zone panel
OUTSIDE_ROW = (9, 3)        # [4] [5] outside temp * 16, [6] air handler temp
DAMPER_ROW = (9, 4)         # [3+zone] damper position 0..15
EQUIPMENT_ROW = (9, 5)      # [3] equipment bits below
# table 1 is the controller
HUMIDITY_ROW = (1, 9)       # [4] zone 1 humidity
MODE_ROW = (1, 12)          # [4] mode [6] effective mode [9] temp [10] hold [12] out [15] all mode
SETPOINT_ROW = (1, 16)      # [3+zone] cool setpoint, [11+zone] heat setpoint
FAN_ROW = (1, 17)           # [3] fan bits
TIME_ROW = (1, 18)          # [3] weekday [4] hour [5] minute
TEMPERATURE_ROW = (1, 24)   # [3+zone] zone temperature

COMPRESSOR_1 = 0x01
COMPRESSOR_2 = 0x02
AUX_HEAT_1 = 0x04
AUX_HEAT_2 = 0x08
REVERSING_VALVE = 0x10
FAN = 0x20
FAN_ALWAYS_ON = 0x04


def decode_temperature(high, low):
  """Turn a two-byte temperature value into integer degrees, truncating."""
  return int(((high << 8) + low) / 16)


def decode_time(day, hour, minute):
  """Controller time of week as e.g. 'Tue 03:07pm'."""
  ampm = 'am'
  if hour == 0:
    hour = 12
  elif hour >= 12:
    ampm = 'pm'
    if hour > 12:
      hour -= 12
  try:
    weekday = WEEKDAY[day]
  except IndexError:
    raise InvalidIndex(f'weekday {day}') from None
  return f'{weekday} {hour:02d}:{minute:02d}{ampm}'


class ZoneStatus:
  FIELDS = ('damper_position', 'cool_setpoint', 'heat_setpoint', 'temperature',
            'temporary', 'hold', 'out')
  OVERRIDDEN = ('cool_setpoint', 'heat_setpoint', 'temporary', 'hold', 'out')

  def __init__(self, damper_position, cool_setpoint, heat_setpoint, temperature,
               temporary, hold, out):
    self.damper_position = damper_position
    self.cool_setpoint = cool_setpoint
    self.heat_setpoint = heat_setpoint
    self.temperature = temperature
    self.temporary = temporary
    self.hold = hold
    self.out = out

  def as_dict(self):
    return {k: getattr(self, k) for k in self.FIELDS}

  def __eq__(self, other):
    if not isinstance(other, ZoneStatus):
      return NotImplemented
    return self.as_dict() == other.as_dict()

  def __repr__(self):
    return f'ZoneStatus({self.as_dict()})'


class StatusRecord:
  """Snapshot of the whole system. zones is a list of ZoneStatus."""

  FIELDS = ('time', 'raw', 'system_mode', 'effective_mode', 'system_time',
            'outside_temp', 'air_handler_temp', 'reverse', 'fan', 'compressor_1',
            'compressor_2', 'aux_heat_1', 'aux_heat_2', 'compressor', 'aux_heat',
            'zone1_humidity', 'all_mode', 'fan_mode')

  def __init__(self, **values):
    zones = values.pop('zones', [])
    missing = set(self.FIELDS) - set(values)
    extra = set(values) - set(self.FIELDS)
    assert not missing and not extra, (missing, extra)
    for (k, v) in values.items():
      setattr(self, k, v)
    self.zones = zones

  def as_dict(self):
    d = {k: getattr(self, k) for k in self.FIELDS}
    d['zones'] = [z.as_dict() for z in self.zones]
    return d

  def __eq__(self, other):
    if not isinstance(other, StatusRecord):
      return NotImplemented
    return self.as_dict() == other.as_dict()

  def __repr__(self):
    return f'StatusRecord({self.as_dict()})'


def _row_name(key):
  return '%d.%d' % key


def raw_dump(rows):
  """rows maps (table, row) to reply data. Returns base64 text holding, for
  each row, a length byte followed by the data.

  Rows are ordered by their "table.row" name compared as text, so 1.12 comes
  before 1.9.
  """
  raw = b''
  for key in sorted(rows, key=_row_name):
    data = bytes(rows[key])
    if len(data) > 255:
      raise ArgumentOutOfRange(f'row {key} has {len(data)} bytes')
    raw += bytes([len(data)]) + data
  return base64.b64encode(raw).decode('ascii')


def decode_raw_dump(blob):
  """Inverse of raw_dump(). Each run is keyed by its own table and row bytes."""
  try:
    raw = base64.b64decode(blob, validate=True)
  except (binascii.Error, ValueError) as e:
    raise IncompleteRawInput(f'raw input is not base64: {e}') from e
  rows = {}
  cursor = 0
  while cursor < len(raw):
    length = raw[cursor]
    data = raw[cursor + 1:cursor + 1 + length]
    if len(data) != length:
      raise IncompleteRawInput(f'raw input truncated at byte {cursor}')
    if length < 3:
      raise IncompleteRawInput(f'raw input has a {length} byte row at byte {cursor}')
    rows[(data[1], data[2])] = data
    cursor += 1 + length
  return rows


def check_rows(rows):
  for key in STATUS_ROWS:
    if key not in rows:
      raise IncompleteRawInput(f'Incomplete raw input (missing data for {key[0]}.{key[1]})')


def check_zones(zones):
  if not 1 <= zones <= MAX_ZONES:
    raise InvalidIndex(f'{zones} zones; must be 1-{MAX_ZONES}')
  return zones


def decode_status(rows, zones, now=None):
  """Pure decode of rows (as from raw_dump/decode_raw_dump or live reads) into
  a StatusRecord for a system with the given number of zones.
  """
  check_zones(zones)
  check_rows(rows)
  try:
    return _decode_status(rows, zones, now)
  except IndexError as e:  # then a row was shorter than its layout
    raise IncompleteRawInput(f'row too short: {e}') from e


def _decode_status(rows, zones, now):
  outside = rows[OUTSIDE_ROW]
  dampers = rows[DAMPER_ROW]
  equipment = rows[EQUIPMENT_ROW][3]
  mode = rows[MODE_ROW]
  setpoints = rows[SETPOINT_ROW]
  clock = rows[TIME_ROW]
  temperatures = rows[TEMPERATURE_ROW]

  values = {
    'time': int(time.time()) if now is None else now,
    'raw': raw_dump(rows),
    'system_mode': SystemMode.label_for(mode[4]),
    'effective_mode': SystemMode.label_for(mode[6]),
    'system_time': decode_time(clock[3], clock[4], clock[5]),
    'outside_temp': decode_temperature(outside[4], outside[5]),
    'air_handler_temp': outside[6],
    'reverse': bool(equipment & REVERSING_VALVE),
    'fan': bool(equipment & FAN),
    'compressor_1': bool(equipment & COMPRESSOR_1),
    'compressor_2': bool(equipment & COMPRESSOR_2),
    'aux_heat_1': bool(equipment & AUX_HEAT_1),
    'aux_heat_2': bool(equipment & AUX_HEAT_2),
    'zone1_humidity': rows[HUMIDITY_ROW][4],
    'all_mode': mode[15],
    'fan_mode': 'Always On' if rows[FAN_ROW][3] & FAN_ALWAYS_ON else 'Auto',
  }
  values['compressor'] = values['compressor_1'] or values['compressor_2']
  values['aux_heat'] = values['aux_heat_1'] or values['aux_heat_2']

  zonelist = []
  for zone in range(zones):
    bit = 1 << zone
    zonelist.append(ZoneStatus(
      damper_position=int(100 * (dampers[zone + 3] / 15)),
      cool_setpoint=setpoints[zone + 3],
      heat_setpoint=setpoints[zone + 11],
      temperature=temperatures[zone + 3],
      temporary=bool(mode[9] & bit),
      hold=bool(mode[10] & bit),
      out=bool(mode[12] & bit),
    ))
  apply_all_mode(zonelist, values['all_mode'])
  return StatusRecord(zones=zonelist, **values)


def apply_all_mode(zonelist, all_mode):
  """When all mode is on, the 1-based zone all_mode dictates every zone's
  setpoints and flags.
  """
  if not all_mode:
    return
  if all_mode > len(zonelist):
    raise InvalidIndex(f'all mode zone {all_mode} but only {len(zonelist)} zones')
  source = zonelist[all_mode - 1].as_dict()
  for z in zonelist:
    for k in ZoneStatus.OVERRIDDEN:
      setattr(z, k, source[k])


def get_status_data(read_row, zones, raw=None, now=None):
  """Query every row in STATUS_ROWS with read_row(table, row), or replay raw
  (a raw_dump() string) without touching the bus. Either way return a
  StatusRecord.
  """
  check_zones(zones)
  if raw:
    rows = decode_raw_dump(raw)
  else:
    rows = {}
    for (table, row) in STATUS_ROWS:
      rows[(table, row)] = bytes(read_row(table, row))
  return decode_status(rows, zones, now)
