from typing import cast


class IpkRuntimeError(RuntimeError):
    @property
    def message(self) -> str:
        return cast("str", self.args[0])


class IpkValidationError(IpkRuntimeError):
    pass


class IpkInvalidScriptNameError(IpkValidationError):
    pass


class IpkMissingFieldError(IpkValidationError):
    @property
    def field_name(self) -> str:
        return cast("str", self.args[1])


class IpkConflictError(IpkRuntimeError):
    pass


class IpkPathExistsError(IpkConflictError):
    @property
    def path(self) -> str:
        return cast("str", self.args[1])


class IpkResourceError(IpkRuntimeError):
    pass


class IpkFormatError(IpkRuntimeError):
    pass
