import re
import torch

from configs import Model_Config
from .model import RWKV
from .logger import rank_zero_info

# checkpoint tensors with no counterpart here: token embedding, final norm and vocabulary head
IGNORED_PREFIXES = ('emb.', 'ln_out.', 'head.')

def load_checkpoint(path:str):
    rank_zero_info(f"########## Loading {path}... ##########")
    load_dict = torch.load(path, map_location="cpu", mmap=True)
    load_keys = list(load_dict.keys())
    for k in load_keys:
        if k.startswith("_forward_module."):
            load_dict[k.replace("_forward_module.", "")] = load_dict[k]
            del load_dict[k]
    return load_dict

def infer_model_config(load_dict:dict, rescale_layer:int = 6, ln_eps:float = 1e-6):
    layer_ids = set()
    for k in load_dict:
        m = re.match(r'blocks\.(\d+)\.', k)
        if m is not None:
            layer_ids.add(int(m.group(1)))
    if len(layer_ids) == 0:
        raise KeyError("checkpoint contains no 'blocks.*' tensors")
    if 'blocks.0.att.key.weight' not in load_dict:
        raise KeyError("checkpoint is missing 'blocks.0.att.key.weight'")
    d_model = load_dict['blocks.0.att.key.weight'].shape[1]
    return Model_Config(d_model=d_model, num_layers=max(layer_ids) + 1, rescale_layer=rescale_layer, ln_eps=ln_eps)

def convert_state_dict(load_dict:dict, config:Model_Config, dtype=torch.float32):
    """
    Maps a BlinkDL RWKV-4 checkpoint onto RWKV.state_dict() names and conventions.

    - time_mix_* vectors are stored as [1, 1, C] and get squeezed
    - time_decay is stored as w with per-step decay exp(-exp(w)); the recurrence adds -exp(w) to pp
    - att.output and ffn.value of layer i are divided by 2 ** (i // rescale_layer), which cancels
      the halving of the hidden state every rescale_layer layers
    """
    model_dict = {}
    for k, w in load_dict.items():
        if k.startswith(IGNORED_PREFIXES):
            continue
        m = re.match(r'blocks\.(\d+)\.', k)
        if m is None:
            raise KeyError(f"unexpected checkpoint tensor {k}")
        layer_id = int(m.group(1))

        w = w.float()
        if '.time_' in k:
            w = w.squeeze()
            if w.dim() == 0:
                w = w.reshape(1)
        if k.endswith('att.time_decay'):
            w = -torch.exp(w)
        if k.endswith('att.output.weight') or k.endswith('ffn.value.weight'):
            w = w / (2 ** int(layer_id // config.rescale_layer))
        model_dict[k] = w.to(dtype=dtype).contiguous()
    return model_dict

def load_model(path:str, rescale_layer:int = 6, dtype=torch.float32, ln_eps:float = 1e-6):
    load_dict = load_checkpoint(path)
    config = infer_model_config(load_dict, rescale_layer=rescale_layer, ln_eps=ln_eps)
    rank_zero_info(f"Model = {config.num_layers} num_layers, {config.d_model} d_model, rescale every {config.rescale_layer} layers")

    state_dict = convert_state_dict(load_dict, config, dtype=dtype)
    with torch.device('meta'):
        model = RWKV(config)
    missing = sorted(set(model.state_dict()) - set(state_dict))
    if len(missing) > 0:
        raise KeyError(f"checkpoint is missing {missing}")
    # strict: an unexpected tensor means the checkpoint is not an RWKV-4 model
    model.load_state_dict(state_dict, assign=True)
    model.eval()
    return model
