# app/infra/detectors/similarity.py
import hashlib
from typing import Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from app.core.config import settings
from app.domain.entities.risk import Gender


@runtime_checkable
class SimilarityProvider(Protocol):
    """
    Contrato del modelo biometrico. Una implementacion real (modelo de
    embeddings faciales) reemplaza a la simulada sin tocar el verificador.
    """

    def embed(self, sample: bytes) -> np.ndarray: ...

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float: ...

    def classify_attribute(self, sample: bytes) -> Optional[Gender]: ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Producto punto normalizado en [-1, 1]; 0.0 si algun vector es nulo."""
    va = np.asarray(a, dtype=float).ravel()
    vb = np.asarray(b, dtype=float).ravel()
    if va.shape != vb.shape:
        raise ValueError(f"Vector size mismatch: {va.shape[0]} vs {vb.shape[0]}")
    norma = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norma == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norma, -1.0, 1.0))


class SimulatedSimilarityProvider:
    """
    Proveedor simulado (no es reconocimiento facial real):
      - embed: histograma por bloques de los bytes de la captura, centrado.
        Capturas casi identicas producen vectores casi paralelos.
      - simulate_impostor: el embedding pasa a ser un vector pseudoaleatorio
        derivado del hash de la captura (toggle de demo "simular impostor").
      - simulated_attribute: atributo declarado que "detecta" el clasificador.
    """

    def __init__(
        self,
        size: int | None = None,
        simulate_impostor: bool = False,
        simulated_attribute: Optional[Gender] = None,
    ):
        self.size = size or settings.BIOMETRIC_EMBEDDING_SIZE
        self.simulate_impostor = simulate_impostor
        self.simulated_attribute = simulated_attribute

    def embed(self, sample: bytes) -> np.ndarray:
        if self.simulate_impostor:
            seed = int.from_bytes(hashlib.sha256(sample).digest()[:8], "big")
            return np.random.default_rng(seed).uniform(-1.0, 1.0, self.size)

        data = np.frombuffer(sample, dtype=np.uint8).astype(float)
        if data.size == 0:
            return np.zeros(self.size)
        if data.size < self.size:
            data = np.resize(data, self.size)

        bloques = np.array([chunk.mean() for chunk in np.array_split(data, self.size)])
        return bloques - bloques.mean()

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    def classify_attribute(self, sample: bytes) -> Optional[Gender]:
        return self.simulated_attribute
