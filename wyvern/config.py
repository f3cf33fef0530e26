import random
import string

import attr


PEER_ID_PREFIX = b'-WY0001-'


def _positive(instance, attribute, value) -> None:
    if value <= 0:
        raise ValueError(f'{attribute.name} must be positive, got {value}')


@attr.s(frozen=True, slots=True, auto_attribs=True)
class ClientConfig:
    """
    Options recognized by the download engine.

    `port` is only advertised to trackers, this client never listens on it.
    `timeout` bounds connecting, the handshake and every socket read or write.
    """

    active_peers: int = attr.ib(default=8, validator=_positive)
    port: int = attr.ib(default=6881, validator=_positive)
    timeout: float = attr.ib(default=10.0, validator=_positive)
    peer_update_interval: float = attr.ib(default=30.0, validator=_positive)
    # requests kept in flight per unchoked peer
    pipeline_depth: int = attr.ib(default=5, validator=_positive)
    # how long finished downloads wait for in-flight blocks before closing sockets
    drain_timeout: float = attr.ib(default=2.0, validator=_positive)


def generate_peer_id() -> bytes:
    suffix = ''.join(random.choices(string.ascii_letters + string.digits, k=12))
    return PEER_ID_PREFIX + suffix.encode('ascii')
