from lightning.pytorch.utilities import rank_zero_info, rank_zero_only

__all__ = ['print0', 'rank_zero_info']

@rank_zero_only
def print0(*args, **kwargs):
    print(*args, **kwargs)
