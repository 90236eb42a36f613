import argparse
import dataclasses
import types
import typing
from dataclasses import dataclass

@dataclass(kw_only=True)
class Model_Config:
    d_model: int
    num_layers: int
    rescale_layer: int = 6
    ln_eps: float = 1e-6
    tmix: str = 'rwkv4'
    cmix: str = 'rwkv4'

    def __post_init__(self):
        if self.d_model <= 0:
            raise ValueError(f"d_model must be positive, got {self.d_model}")
        if self.num_layers <= 0:
            raise ValueError(f"num_layers must be positive, got {self.num_layers}")
        # used as a modulus when deciding where to halve the hidden state
        if self.rescale_layer <= 0:
            raise ValueError(f"rescale_layer must be positive, got {self.rescale_layer}")
        if self.ln_eps <= 0:
            raise ValueError(f"ln_eps must be positive, got {self.ln_eps}")

def _convert(value:str, tp):
    origin = typing.get_origin(tp)
    if origin is typing.Union or origin is types.UnionType:
        args = typing.get_args(tp)
        if value.lower() == 'none' and type(None) in args:
            return None
        last_error = None
        for arg in args:
            if arg is type(None):
                continue
            try:
                return _convert(value, arg)
            except ValueError as e:
                last_error = e
        raise last_error or ValueError(f"cannot convert {value!r}")
    if tp is bool:
        if value.lower() in ['1', 'true', 'yes']:
            return True
        if value.lower() in ['0', 'false', 'no']:
            return False
        raise ValueError(f"invalid boolean {value!r}")
    if tp in (int, float, str):
        return tp(value)
    if tp is typing.Any:
        return value
    raise ValueError(f"unsupported field type {tp}")

def _build(config_type, values:dict, prefix:str, errors:list):
    hints = typing.get_type_hints(config_type)
    kwargs = {}
    for field in dataclasses.fields(config_type):
        name = prefix + field.name
        tp = hints[field.name]
        if dataclasses.is_dataclass(tp):
            kwargs[field.name] = _build(tp, values, name + '.', errors)
            continue
        if name in values:
            try:
                kwargs[field.name] = _convert(values.pop(name), tp)
            except ValueError as e:
                errors.append(f"--{name}: {e}")
        elif field.default is dataclasses.MISSING and field.default_factory is dataclasses.MISSING:
            errors.append(f"missing required argument --{name}")
    if len(errors) > 0:
        return None
    try:
        return config_type(**kwargs)
    except ValueError as e:
        errors.append(f"{prefix.rstrip('.') or config_type.__name__}: {e}")
        return None

def _field_names(config_type, prefix:str = ''):
    hints = typing.get_type_hints(config_type)
    for field in dataclasses.fields(config_type):
        if dataclasses.is_dataclass(hints[field.name]):
            yield from _field_names(hints[field.name], prefix + field.name + '.')
        else:
            yield prefix + field.name

def parse_cmdline_configs(argv:list[str], config_type=Model_Config):
    """
    Parses `--name=value` or `--name value` arguments into the dataclass `config_type`.
    Fields of nested dataclasses are addressed with dotted names, e.g. `--model.d_model=768`.
    Returns (config, errors), where errors is an empty string on success.
    """
    parser = argparse.ArgumentParser(allow_abbrev=False, add_help=False)
    for name in _field_names(config_type):
        # a bare flag means true
        parser.add_argument(f'--{name}', dest=name, nargs='?', const='true', default=argparse.SUPPRESS)
    args, unknown = parser.parse_known_args(argv)
    values = vars(args)

    errors = []
    config = _build(config_type, values, '', errors)
    for arg in unknown:
        errors.append(f"unknown argument {arg}")
    if len(errors) > 0:
        return None, '\n'.join(errors)
    return config, ''
