"""__init__.py for comfortzone

We let you talk to a Carrier ComfortZone II controller on its RS-485 bus.

You need a Bus, which wants a stream to read from and write to. Create a
stream by passing a device path or URI to StreamFactory(). Then wrap the
Bus in a Session, which sends requests and waits for replies.

Example:

stream = StreamFactory('/dev/ttyUSB0')
### if using an Ethernet/RS-485 bridge: StreamFactory('192.168.1.20:8000')
bus = Bus(stream)
session = Session(bus, zones=3)   # we are address 99 unless told otherwise

status = session.get_status_data()
print(status.outside_temp, [z.temperature for z in status.zones])

# later, decode the same data again without the bus
again = Session(None, zones=3).get_status_data(status.raw)

# or talk to the controller directly: read table 1 row 12
reply = session.send_with_reply(1, 'read', 0, 1, 12)
print(reply)
"""

from . import frames
from . import tables
from . import transactions


ComfortZoneError = frames.ComfortZoneError

StreamFactory = frames.StreamFactory
Bus = frames.Bus
BusSettings = frames.BusSettings
Function = frames.Function
Frame = frames.Frame
encode_frame = frames.encode_frame
decode_frame = frames.decode_frame

Session = transactions.Session
NoReplyReceived = transactions.NoReplyReceived
ErrorReplyReceived = transactions.ErrorReplyReceived

StatusRecord = tables.StatusRecord
SystemMode = tables.SystemMode
raw_dump = tables.raw_dump
decode_raw_dump = tables.decode_raw_dump
