"""Textual configuration of contact matrices.

A contact matrix is described by one line of ``KEY=value`` tokens and bare flags::

    CONTACT_MATRIX ATOMS=ow,hw SWITCH11={RATIONAL R_0=0.3} SWITCH12={EXP R_0=0.2}
        SWITCH22={GAUSSIAN R_0=0.1 D_MAX=0.5} WTOL=1e-6

Values wrapped in braces may contain spaces. With a single node group the
switching function is given by ``SWITCH``. With several groups every type pair
``(i, j)`` with ``i <= j`` needs its own ``SWITCH<N>`` keyword where
``N = base(i) + j + 1`` and ``base(i)`` is ``(i + 1) * 10`` for fewer than ten
groups and ``(i + 1) * 100`` for fewer than one hundred. The mirrored number
``base(j) + i + 1`` is read as an alias of the same pair.
"""

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from torch_adjmat.contact_matrix import ContactMatrix
from torch_adjmat.errors import (
    ConfigurationError,
    MissingKeywordError,
    UnsupportedConfigurationError,
)
from torch_adjmat.nodes import NodeGroup, NodeRegistry
from torch_adjmat.switching import SwitchingFunctionMatrix


logger = logging.getLogger(__name__)

ACTION_NAME = "CONTACT_MATRIX"
MAX_NODE_TYPES = 99

_SWITCH_KEY = re.compile(r"SWITCH\d*")


def parse_keywords(line: str) -> dict[str, str]:
    """Split a keyword line into a mapping of upper-cased keys to raw values.

    Args:
        line (str): Whitespace separated ``KEY=value`` tokens and flags. A leading
            ``CONTACT_MATRIX`` token is ignored.

    Returns:
        dict[str, str]: Values by key, with flags mapped to the empty string.

    Raises:
        ConfigurationError: If braces are unbalanced or a key appears twice.

    Examples:
        >>> parse_keywords("ATOMS=a,b SWITCH={RATIONAL R_0=1.0} NOPBC")
        {'ATOMS': 'a,b', 'SWITCH': '{RATIONAL R_0=1.0}', 'NOPBC': ''}
    """
    tokens: list[str] = []
    current: list[str] = []
    depth = 0
    for char in line:
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth < 0:
                raise ConfigurationError(f"unbalanced braces in {line!r}")
        if char.isspace() and depth == 0:
            if current:
                tokens.append("".join(current))
                current = []
            continue
        current.append(char)
    if depth != 0:
        raise ConfigurationError(f"unbalanced braces in {line!r}")
    if current:
        tokens.append("".join(current))

    if tokens and tokens[0].upper() == ACTION_NAME:
        tokens = tokens[1:]

    keywords: dict[str, str] = {}
    for token in tokens:
        key, _, value = token.partition("=")
        key = key.upper()
        if not key:
            raise ConfigurationError(f"token {token!r} has no keyword")
        if key in keywords:
            raise ConfigurationError(f"keyword {key} given more than once")
        keywords[key] = value
    return keywords


def numbered_keyword_base(index: int, n_types: int) -> int:
    """Base of the ``SWITCH<N>`` numbers of the type with the given index.

    Raises:
        UnsupportedConfigurationError: If there are 100 or more node types.
    """
    if n_types < 10:
        return (index + 1) * 10
    if n_types < 100:
        return (index + 1) * 100
    raise UnsupportedConfigurationError(
        f"at most {MAX_NODE_TYPES} node types can be numbered, got {n_types}"
    )


def switch_keyword(type_a: int, type_b: int, n_types: int) -> str:
    """Keyword holding the switching function of a pair of node types.

    Examples:
        >>> switch_keyword(0, 1, 2)
        'SWITCH12'
        >>> switch_keyword(1, 0, 2)
        'SWITCH21'
    """
    if n_types == 1:
        return "SWITCH"
    return f"SWITCH{numbered_keyword_base(type_a, n_types) + type_b + 1}"


def read_switching_matrix(
    keywords: Mapping[str, str], n_types: int
) -> SwitchingFunctionMatrix:
    """Build the switching function matrix from ``SWITCH`` keywords.

    Args:
        keywords (Mapping[str, str]): Keyword values. Keys other than ``SWITCH``
            and ``SWITCH<N>`` are ignored.
        n_types (int): Number of node types.

    Returns:
        SwitchingFunctionMatrix: A complete matrix.

    Raises:
        MissingKeywordError: If the keyword of a type pair is absent or empty.
        UnsupportedConfigurationError: If there are 100 or more node types.
        ConfigurationError: If a pair is given twice with different values, a
            switching keyword belongs to no pair, or a definition is invalid.
    """
    switches = {k: v for k, v in keywords.items() if _SWITCH_KEY.fullmatch(k)}
    matrix = SwitchingFunctionMatrix(n_types)

    if n_types == 1:
        text = switches.pop("SWITCH", "")
        if not text.strip():
            raise MissingKeywordError("SWITCH")
        sf = matrix.set(0, 0, text)
        logger.info(
            "Constructing adjacency matrix between nodes that are within %s",
            sf.description,
        )
    else:
        for i in range(n_types):
            for j in range(i, n_types):
                key = switch_keyword(i, j, n_types)
                alias = switch_keyword(j, i, n_types)
                text = switches.pop(key, "")
                alias_text = switches.pop(alias, "") if alias != key else ""
                if text.strip() and alias_text.strip() and text != alias_text:
                    raise ConfigurationError(
                        f"{key} and {alias} define the same type pair differently"
                    )
                text = text if text.strip() else alias_text
                if not text.strip():
                    raise MissingKeywordError(
                        key,
                        f"could not find {key} keyword. Need one SWITCH keyword for "
                        "each distinct pair of node types",
                    )
                sf = matrix.set(i, j, text)
                logger.info(
                    "Node types %d and %d must be within %s", i + 1, j + 1, sf.description
                )

    if switches:
        raise ConfigurationError(
            f"switching keywords {sorted(switches)} do not match any pair of the "
            f"{n_types} node types"
        )
    return matrix


@dataclass(frozen=True)
class ContactMatrixConfig:
    """Parsed keywords of a contact matrix.

    Attributes:
        atoms (tuple[str, ...]): Labels of the node groups, in type order.
        switches (Mapping[str, str]): Raw ``SWITCH``/``SWITCH<N>`` definitions.
        weight_tolerance (float): Weights above this value are active.
        pbc (bool): Whether distances use periodic boundaries.
    """

    atoms: tuple[str, ...]
    switches: Mapping[str, str] = field(default_factory=dict)
    weight_tolerance: float = 0.0
    pbc: bool = True

    @classmethod
    def from_keywords(cls, source: str | Mapping[str, str]) -> "ContactMatrixConfig":
        """Read a configuration from a keyword line or a keyword mapping.

        Args:
            source (str | Mapping[str, str]): Keyword line or already split keywords.

        Returns:
            ContactMatrixConfig: The configuration.

        Raises:
            MissingKeywordError: If ``ATOMS`` is missing.
            ConfigurationError: If a keyword is unknown or a value is invalid.
        """
        if isinstance(source, str):
            keywords = parse_keywords(source)
        else:
            keywords = {key.upper(): str(value) for key, value in source.items()}

        known = {"ATOMS", "WTOL", "NOPBC"}
        unknown = [k for k in keywords if k not in known and not _SWITCH_KEY.fullmatch(k)]
        if unknown:
            raise ConfigurationError(f"unknown keywords {unknown}")

        if not keywords.get("ATOMS", "").strip():
            raise MissingKeywordError("ATOMS")
        atoms = tuple(label.strip() for label in keywords["ATOMS"].split(","))
        if any(not label for label in atoms):
            raise ConfigurationError(f"empty label in ATOMS={keywords['ATOMS']}")

        try:
            weight_tolerance = float(keywords.get("WTOL", 0.0))
        except ValueError:
            raise ConfigurationError(
                f"could not read WTOL from {keywords['WTOL']!r}"
            ) from None
        if "NOPBC" in keywords and keywords["NOPBC"]:
            raise ConfigurationError("NOPBC is a flag and takes no value")

        return cls(
            atoms=atoms,
            switches={k: v for k, v in keywords.items() if _SWITCH_KEY.fullmatch(k)},
            weight_tolerance=weight_tolerance,
            pbc="NOPBC" not in keywords,
        )

    @property
    def n_types(self) -> int:
        """Number of node types."""
        return len(self.atoms)

    def switching_matrix(self) -> SwitchingFunctionMatrix:
        """Switching function matrix described by the ``SWITCH`` keywords."""
        return read_switching_matrix(self.switches, self.n_types)

    def build(
        self,
        groups: Mapping[str, NodeGroup] | Sequence[NodeGroup],
        *,
        use_neighbor_list: bool = True,
        task_chunk_size: int | None = None,
    ) -> ContactMatrix:
        """Create the contact matrix with the node groups named in ``ATOMS``.

        Args:
            groups (Mapping[str, NodeGroup] | Sequence[NodeGroup]): Available node
                groups, by label or as a sequence of named groups.
            use_neighbor_list (bool): Whether to prune pairs with a cell list.
            task_chunk_size (int | None): Maximum number of tasks per batch.

        Returns:
            ContactMatrix: The configured model.

        Raises:
            ConfigurationError: If a label is unknown or the switching keywords
                are invalid.
        """
        if not isinstance(groups, Mapping):
            groups = {group.name: group for group in groups}
        missing = [label for label in self.atoms if label not in groups]
        if missing:
            raise ConfigurationError(
                f"unknown node groups {missing}, available: {sorted(groups)}"
            )
        matrix = self.switching_matrix()
        nodes = NodeRegistry([groups[label] for label in self.atoms])
        return ContactMatrix(
            nodes,
            matrix,
            use_neighbor_list=use_neighbor_list,
            weight_tolerance=self.weight_tolerance,
            task_chunk_size=task_chunk_size,
            pbc=self.pbc,
        )
