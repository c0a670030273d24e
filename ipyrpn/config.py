import json, os
from dataclasses import dataclass
from .codec import DEFAULT_SCHEME, MessageCodec

port_fields = ("stdin_port", "hb_port", "control_port", "shell_port", "iopub_port")


class ConfigError(ValueError): "Connection file is missing fields or holds invalid values."


def _port(data:dict, name:str)->int:
    if name not in data: raise ConfigError(f"connection info missing {name!r}")
    try: port = int(data[name])
    except (TypeError, ValueError): raise ConfigError(f"{name} is not an integer: {data[name]!r}") from None
    if not 0 <= port <= 65535: raise ConfigError(f"{name} out of range: {port}")
    return port


@dataclass(frozen=True)
class ConnectionConfig:
    ip:str
    transport:str
    key:str
    signature_scheme:str
    kernel_name:str
    stdin_port:int
    hb_port:int
    control_port:int
    shell_port:int
    iopub_port:int

    @classmethod
    def from_dict(cls, data:dict)->"ConnectionConfig":
        "Validate parsed connection-file JSON."
        if not isinstance(data, dict): raise ConfigError("connection info is not a JSON object")
        for name in ("ip", "transport"):
            if not isinstance(data.get(name), str) or not data[name]: raise ConfigError(f"connection info missing {name!r}")
        scheme = data.get("signature_scheme") or DEFAULT_SCHEME
        key = data.get("key") or ""
        if not isinstance(key, str): raise ConfigError("key must be a string")
        try: MessageCodec(key, scheme)
        except ValueError as exc: raise ConfigError(str(exc)) from None
        return cls(ip=data["ip"], transport=data["transport"], key=key, signature_scheme=scheme,
            kernel_name=data.get("kernel_name") or "", **{name: _port(data, name) for name in port_fields})

    @classmethod
    def from_file(cls, path:str)->"ConnectionConfig":
        "Load connection info from JSON connection file at `path`."
        try:
            with open(path, encoding="utf-8") as f: data = json.load(f)
        except (OSError, ValueError) as exc: raise ConfigError(f"cannot read connection file {path}: {exc}") from exc
        return cls.from_dict(data)

    def addr(self, port:int)->str: return f"{self.transport}://{self.ip}:{port}"

    def codec(self)->MessageCodec: return MessageCodec(self.key, self.signature_scheme)

    @property
    def ports(self)->dict: return {name: getattr(self, name) for name in port_fields}


def env_float(name:str, default:float)->float:
    "Return float env var `name`, or `default` on missing/invalid."
    raw = os.environ.get(name)
    if raw is None: return default
    try: return float(raw)
    except ValueError: return default


def env_int(name:str, default:int|None=None)->int|None:
    "Return int env var `name`, or `default` on missing/invalid."
    raw = os.environ.get(name)
    if raw is None: return default
    try: return int(raw)
    except ValueError: return default
