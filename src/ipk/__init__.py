from .version import __version__
from .container import (
    FORMAT_MARKER_NAME,
    IpkFormat,
    read_ipk,
    read_ipk_detect_format,
    read_ipk_path,
    write_ipk,
    write_ipk_path,
)
from .control import (
    CONTROL_ARCH,
    CONTROL_DEPENDS,
    CONTROL_DESCRIPTION,
    CONTROL_HOMEPAGE,
    CONTROL_MAINTAINER,
    CONTROL_PACKAGE,
    CONTROL_VERSION,
    MANDATORY_FIELDS,
)
from .depends import (
    conjunctive_dependency,
    disjunctive_dependency,
    versioned_dependency,
)
from .exceptions import (
    IpkConflictError,
    IpkFormatError,
    IpkInvalidScriptNameError,
    IpkMissingFieldError,
    IpkPathExistsError,
    IpkResourceError,
    IpkRuntimeError,
    IpkValidationError,
)
from .package import FileEntry, IpkPackage, PathType
