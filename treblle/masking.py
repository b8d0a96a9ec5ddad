"""
Módulo de mascaramento de campos sensíveis
Substitui valores de campos sensíveis por asteriscos mantendo o tamanho original
"""
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional
import structlog

logger = structlog.get_logger(__name__)

MASK_CHAR = "*"

# Sempre mascarados, comparação exata (case-sensitive)
DEFAULT_FIELDS_TO_MASK = (
    "password",
    "pwd",
    "secret",
    "password_confirmation",
    "passwordConfirmation",
    "cc",
    "card_number",
    "cardNumber",
    "ccv",
    "ssn",
    "credit_score",
    "creditScore",
)


def generate_fields_to_mask(additional_fields: Optional[Iterable[str]] = None) -> FrozenSet[str]:
    """Gera o conjunto de campos a mascarar (padrões + adicionais do usuário)"""
    return frozenset(DEFAULT_FIELDS_TO_MASK).union(additional_fields or ())


def mask_sensitive_values(value: Any, fields_to_mask: FrozenSet[str]) -> Any:
    """
    Mascara recursivamente os campos sensíveis de um valor JSON-like.

    Apenas strings são substituídas: um valor não-string sob uma chave sensível
    é percorrido (ou devolvido) sem alteração. O valor de entrada nunca é
    modificado; dicts e listas são sempre copiados.
    """
    if isinstance(value, Mapping):
        masked = {}
        for key, item in value.items():
            if isinstance(item, str):
                masked[key] = MASK_CHAR * len(item) if key in fields_to_mask else item
            else:
                masked[key] = mask_sensitive_values(item, fields_to_mask)
        return masked

    if isinstance(value, (list, tuple)):
        return [mask_sensitive_values(item, fields_to_mask) for item in value]

    return value


class FieldMasker:
    """Mascarador de bodies e headers com conjunto de campos imutável"""

    def __init__(self, fields_to_mask: FrozenSet[str]):
        self.fields_to_mask = frozenset(fields_to_mask)

    def mask(self, value: Any) -> Any:
        """Mascara um body já normalizado"""
        return mask_sensitive_values(value, self.fields_to_mask)

    def mask_headers(self, headers: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
        """Mascara headers; None continua None"""
        if headers is None:
            return None
        return mask_sensitive_values(dict(headers), self.fields_to_mask)

    def __contains__(self, field: str) -> bool:
        return field in self.fields_to_mask


def create_masker(additional_fields: Optional[Iterable[str]] = None) -> FieldMasker:
    """Factory function para criar mascarador"""
    fields = generate_fields_to_mask(additional_fields)
    logger.debug("Mascarador criado", fields=len(fields))
    return FieldMasker(fields)
