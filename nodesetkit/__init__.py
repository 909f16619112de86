"""NodeSet pod identity, deletion ordering, claim ownership and Slurm node control."""

__version__ = "0.3.0"

__all__ = [
    "models",
    "identity",
    "ordering",
    "kube",
    "podcontrol",
    "hostlist",
    "slurmcontrol",
]