"""__main__.py for comfortzone

If our first command line argument is neither RAW nor STATUS, we run the
exporter and never exit. The first argument is optionally a configuration
file to use.

If our first command line argument is RAW, the second argument must be
the URI of the RS-485 bus adapter.

    If there are no other arguments, we listen on the bus and print each
    parsed frame as it arrives and never exit.

    Otherwise the arguments are the destination address, READ or WRITE,
    the table and row, and for WRITE the data bytes. We send the request,
    print the reply, and exit.

If our first command line argument is STATUS, the arguments are the URI
of the bus adapter, the number of zones, and optionally a raw dump to
decode instead of querying the controller. We print one status record as
JSON and exit.

Examples:

    python -m comfortzone comfortzone.yml    run the metrics server forever
    python -m comfortzone RAW /dev/ttyUSB0   print every frame on the bus forever
    python -m comfortzone RAW 10.0.0.5:8000 1 READ 1 12
            read table 1 row 12 from the controller through a TCP bridge
    python -m comfortzone STATUS /dev/ttyUSB0 3
            print the status of a three zone system
"""

from comfortzone import monitor
from comfortzone import transactions


if __name__ == '__main__':
    import sys
    if len(sys.argv) >= 3 and sys.argv[1] == 'RAW':
        sys.exit(transactions.main([sys.argv[0]] + sys.argv[2:]))
    elif len(sys.argv) >= 2 and sys.argv[1] == 'STATUS':
        sys.exit(transactions.status_main([sys.argv[0]] + sys.argv[2:]))
    else:
        sys.exit(monitor.main(sys.argv))
