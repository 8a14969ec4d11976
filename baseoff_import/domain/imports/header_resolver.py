"""
Resolve inconsistently-named source columns to the internal BaseOff schema.

Each internal field has a list of label variants. Matching runs in two passes:

1. A normalized label that equals a variant resolves to that field.
2. Otherwise the first field (in table order) with a variant contained in
   the label wins.

The exact pass comes first because substring matching alone lets a short
variant of an earlier field shadow a later one: "telefone2" contains
"telefone" and would always resolve to ``telefone1``, leaving ``telefone2``
unmappable. Once a field is mapped, later columns cannot remap it.
"""
import logging
import re
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

# Order matters: substring matching stops at the first field with a hit.
COLUMN_VARIANTS: Dict[str, List[str]] = {
    "cpf": ["cpf", "cpf_cliente", "cpf cliente", "nr_cpf", "numero_cpf"],
    "nome": ["nome", "nome_cliente", "nome cliente", "nm_cliente", "cliente"],
    "telefone1": ["telefone", "telefone1", "tel1", "fone", "celular", "phone"],
    "telefone2": ["telefone2", "telefone 2", "tel2", "fone2", "celular2"],
    "telefone3": ["telefone3", "telefone 3", "tel3", "fone3"],
    "banco": ["banco", "cod_banco", "codigo_banco", "banco_codigo"],
    "margem_disponivel": ["margem", "margem_disponivel", "vl_margem", "margem_livre"],
    "valor_beneficio": ["beneficio", "valor_beneficio", "vl_beneficio"],
    "uf": ["uf", "estado", "sigla_uf"],
    "municipio": ["municipio", "cidade", "nm_municipio"],
    "numero_beneficio": ["nb", "numero_beneficio", "nr_beneficio", "beneficio_numero"],
    "especie": ["especie", "cd_especie", "codigo_especie"],
    "dib": ["dib", "dt_dib", "data_dib"],
    "data_nascimento": ["nascimento", "data_nascimento", "dt_nascimento", "data_nasc"],
    "numero_contrato": ["contrato", "numero_contrato", "nr_contrato", "cd_contrato"],
    "parcelas_restantes": ["parcelas", "parcelas_restantes", "qt_parcelas", "prazo"],
    "valor_parcela": ["parcela", "valor_parcela", "vl_parcela"],
    "saldo_devedor": ["saldo", "saldo_devedor", "vl_saldo"],
    "taxa": ["taxa", "taxa_juros", "tx_juros"],
}

INTERNAL_FIELDS = tuple(COLUMN_VARIANTS.keys())

_SEPARATORS = re.compile(r"[_\s]+")


def normalize_header_label(label: Optional[str]) -> str:
    """Lowercase, trim, and collapse runs of whitespace/underscores to '_'."""
    if label is None:
        return ""
    return _SEPARATORS.sub("_", str(label).lower().strip())


_NORMALIZED_VARIANTS: Dict[str, List[str]] = {
    key: [normalize_header_label(variant) for variant in variants]
    for key, variants in COLUMN_VARIANTS.items()
}


def match_internal_field(label: Optional[str]) -> Optional[str]:
    """Return the internal field a raw column label resolves to, if any."""
    normalized = normalize_header_label(label)
    if not normalized:
        return None

    for key, variants in _NORMALIZED_VARIANTS.items():
        if normalized in variants:
            return key

    for key, variants in _NORMALIZED_VARIANTS.items():
        if any(variant in normalized for variant in variants):
            return key

    return None


def build_header_map(headers: Sequence[str]) -> Dict[str, int]:
    """
    Map internal field keys to column indexes.

    The first column that resolves to a field keeps it; columns that match
    nothing are ignored.
    """
    header_map: Dict[str, int] = {}
    ignored: List[str] = []

    for index, label in enumerate(headers):
        key = match_internal_field(label)
        if key is None:
            ignored.append(str(label))
            continue
        if key not in header_map:
            header_map[key] = index

    logger.info("Resolved %d of %d columns: %s", len(header_map), len(headers), header_map)
    if ignored:
        logger.debug("Ignored unrecognized columns: %s", ignored)
    return header_map
