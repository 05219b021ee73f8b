"""
An authenticated HTTP forward proxy, with CONNECT tunnels.
"""

from ._proxy import (
    TokenProxy,
    handle,
)
from ._config import (
    __version__,
    AuthScheme,
    Port,
    ProxyConfig,
    TargetMode,
    load_configuration,
)
from ._auth import (
    AuthGate,
    AuthResult,
    authenticate,
)
from ._headers import (
    Direction,
    sanitize,
)
from ._errors import (
    BadTarget,
    BodyTooLarge,
    ConfigurationError,
    InternalFault,
    NotFound,
    ProxyError,
    UpstreamBodyTooLarge,
    UpstreamUnreachable,
)
from ._forward import (
    InboundRequest,
    PlainForwarder,
)
from ._shutdown import ShutdownCoordinator
from ._tunnel import (
    TunnelSession,
    TunnelState,
    splice,
)
