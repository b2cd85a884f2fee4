from livediar.backends.base import InferenceBackend
from livediar.backends.stub import ScriptedBackend, ToneSignatureBackend


def create_backend(name: str, **kwargs) -> InferenceBackend:
    """
    Build a backend by name. The NeMo stack is imported only when requested.
    """
    if name in ("tone", ToneSignatureBackend.name):
        return ToneSignatureBackend(**kwargs)
    if name == "nemo":
        from livediar.backends.nemo_backend import NemoInferenceBackend
        return NemoInferenceBackend(**kwargs)
    raise ValueError(f"Unknown backend: {name}")


__all__ = ["InferenceBackend", "ScriptedBackend", "ToneSignatureBackend", "create_backend"]
