"""
cluster-connect: local connection sessions for remote clusters.

Runs the user-defined setup commands a remote cluster needs before its client can be used
(tunnels, proxies, port-forwards), waits for their local ports to become reachable, and
tears everything down again on shutdown.

Modules:
    - connection: Session manager, process runner and port prober
    - config: Loading and validation of the connection configuration file
    - main: The `cluster-connect` command-line entry point
"""

import logging

from ._version import version as __version__

__all__ = ["__version__"]

_LOGGER = logging.getLogger(__name__)
_LOGGER.addHandler(logging.NullHandler())
