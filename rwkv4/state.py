import torch
from torch import Tensor
from dataclasses import dataclass, field

from configs import Model_Config

# stands in for -inf in the running max of the WKV recurrence ("no prior mass")
PP_SENTINEL = -1e30

def pp_sentinel(dtype:torch.dtype):
    # -1e30 does not fit in float16, fall back to the most negative finite value of the dtype
    return max(PP_SENTINEL, torch.finfo(dtype).min)

@dataclass(kw_only=True)
class TimeMixState:
    shift_state : Tensor # att_xx, last input seen by the time mix
    aa : Tensor          # att_aa, numerator of the running weighted sum
    bb : Tensor          # att_bb, denominator of the running weighted sum
    pp : Tensor          # att_pp, shared exponent of aa and bb

@dataclass(kw_only=True)
class ChannelMixState:
    shift_state : Tensor # ffn_xx, last input seen by the channel mix

@dataclass(kw_only=True)
class BlockState:
    time_mix_state : TimeMixState
    channel_mix_state : ChannelMixState

SNAPSHOT_FIELDS = ['ffn_xx', 'att_xx', 'att_aa', 'att_bb', 'att_pp']

@dataclass(kw_only=True)
class ModelState:
    """
    Recurrent memory of one session, one BlockState per layer.
    An empty block_states list means the session has not started yet.
    Forward calls return a new ModelState and leave the one they were given untouched.
    """
    seq_pos : int = 0
    block_states : list[BlockState] = field(default_factory=list)

    def __len__(self):
        return len(self.block_states)

    def validate(self, config:Model_Config):
        if len(self.block_states) != config.num_layers:
            raise ValueError(f"state has {len(self.block_states)} layers, model has {config.num_layers}")
        for layer_id, block_state in enumerate(self.block_states):
            for name, t in zip(SNAPSHOT_FIELDS, _vectors(block_state)):
                if t.shape != (config.d_model,):
                    raise ValueError(f"state layer {layer_id} {name} has shape {tuple(t.shape)}, expected ({config.d_model},)")

    def save(self, path):
        records = [{name: t.detach().cpu().clone() for name, t in zip(SNAPSHOT_FIELDS, _vectors(block_state))} for block_state in self.block_states]
        torch.save(dict(seq_pos=self.seq_pos, layers=records), path)

    @staticmethod
    def load(path, config:Model_Config, device=None, dtype=None):
        snapshot = torch.load(path, map_location='cpu')
        state = ModelState(seq_pos=int(snapshot['seq_pos']))
        for record in snapshot['layers']:
            missing = [name for name in SNAPSHOT_FIELDS if name not in record]
            if len(missing) > 0:
                raise ValueError(f"state snapshot record is missing {missing}")
            t = {name: record[name].to(device=device, dtype=dtype) for name in SNAPSHOT_FIELDS}
            state.block_states.append(BlockState(
                time_mix_state=TimeMixState(shift_state=t['att_xx'], aa=t['att_aa'], bb=t['att_bb'], pp=t['att_pp']),
                channel_mix_state=ChannelMixState(shift_state=t['ffn_xx']),
            ))
        state.validate(config)
        return state

def _vectors(block_state:BlockState):
    tms = block_state.time_mix_state
    return block_state.channel_mix_state.shift_state, tms.shift_state, tms.aa, tms.bb, tms.pp
