########################################################################################################
# The RWKV Language Model - https://github.com/BlinkDL/RWKV-LM
########################################################################################################

from pydoc import locate

import torch
import torch.nn as nn
from torch import Tensor

from .state import ModelState, BlockState
from .CoreDependencies import TCompile

from configs import Model_Config

def get_component_factory(typepath:str):
    factory = locate(typepath)
    if factory is None:
        raise ValueError(f"Unsupported component type: {typepath}")
    return factory

class Block(nn.Module):
    def __init__(self, config:Model_Config, layer_id):
        super().__init__()
        self.layer_id = layer_id

        self.ln1 = nn.LayerNorm(config.d_model, eps=config.ln_eps)
        self.ln2 = nn.LayerNorm(config.d_model, eps=config.ln_eps)

        if self.layer_id == 0:
            self.ln0 = nn.LayerNorm(config.d_model, eps=config.ln_eps)

        tmix:nn.Module = get_component_factory(f'tmix.tmix_{config.tmix}.TMix_{config.tmix}')(config, layer_id)
        cmix:nn.Module = get_component_factory(f'cmix.cmix_{config.cmix}.CMix_{config.cmix}')(config, layer_id)

        self.default_time_mix_state_factory = tmix.get_default_state_factory()
        self.default_channel_mix_state_factory = cmix.get_default_state_factory()
        self.att = tmix
        self.ffn = cmix

    @TCompile
    def forward(self, x:Tensor, last_model_state:ModelState):
        # x is one position [C] or a whole sequence [T, C]; LayerNorm handles both in one call
        if self.layer_id == 0:
            x = self.ln0(x)
        dx, time_mix_state = self.att(self.ln1(x), last_model_state)
        x = x + dx
        dx, channel_mix_state = self.ffn(self.ln2(x), last_model_state)
        x = x + dx
        return x, BlockState(time_mix_state=time_mix_state, channel_mix_state=channel_mix_state)

class RWKV(nn.Module):
    """
    Stack of RWKV-4 blocks mapping token embeddings to hidden states.

    The module holds parameters only. All per-session memory lives in the ModelState that
    callers pass in and get back, so one model can serve any number of sessions at once
    as long as no two of them share a ModelState.

        out, state = model.forward(emb[:5], None)
        out, state = model.forward(emb[5], state)     # RNN has state (use deepcopy to clone states)
        out, state = model.forward(emb[6:8], state)
    """
    def __init__(self, config:Model_Config):
        super().__init__()
        self.config = config
        self.blocks = nn.ModuleList([Block(config, i) for i in range(config.num_layers)])

    def get_default_model_state(self, x:Tensor, requires_grad:bool=False):
        model_state = ModelState()
        for block in self.blocks:
            model_state.block_states.append(BlockState(
                time_mix_state=block.default_time_mix_state_factory(x, self.config, requires_grad),
                channel_mix_state=block.default_channel_mix_state_factory(x, self.config, requires_grad),
            ))
        return model_state

    def _check_input(self, x:Tensor):
        config = self.config
        if x.dim() not in (1, 2):
            raise ValueError(f"expected input of shape [{config.d_model}] or [T, {config.d_model}], got {tuple(x.shape)}")
        if x.size(-1) != config.d_model:
            raise ValueError(f"input has width {x.size(-1)}, model has d_model={config.d_model}")
        if x.dim() == 2 and x.size(0) == 0:
            raise ValueError("empty input sequence")

    def forward(self, x:Tensor, last_model_state:ModelState|None = None):
        config = self.config
        self._check_input(x)
        T = 1 if x.dim() == 1 else x.size(0)

        if last_model_state is None or len(last_model_state.block_states) == 0:
            seq_pos = 0 if last_model_state is None else last_model_state.seq_pos
            last_model_state = self.get_default_model_state(x)
            last_model_state.seq_pos = seq_pos
        else:
            last_model_state.validate(config)

        next_model_state = ModelState(seq_pos=last_model_state.seq_pos + T)
        for layer_id, block in enumerate(self.blocks):
            x, next_block_state = block(x, last_model_state)
            if (layer_id + 1) % config.rescale_layer == 0:
                x = x * 0.5
            next_model_state.block_states.append(next_block_state)

        return x, next_model_state

    def forward_step(self, x:Tensor, last_model_state:ModelState|None = None):
        if x.dim() != 1:
            raise ValueError(f"forward_step expects a single vector, got shape {tuple(x.shape)}")
        return self.forward(x, last_model_state)

    def forward_sequence(self, x:Tensor|list[Tensor], last_model_state:ModelState|None = None):
        if isinstance(x, (list, tuple)):
            if len(x) == 0:
                raise ValueError("empty input sequence")
            for xi in x:
                if xi.shape != (self.config.d_model,):
                    raise ValueError(f"sequence element has shape {tuple(xi.shape)}, expected ({self.config.d_model},)")
            x = torch.stack(list(x), dim=0)
        if x.dim() != 2:
            raise ValueError(f"forward_sequence expects a [T, C] tensor, got shape {tuple(x.shape)}")
        return self.forward(x, last_model_state)
