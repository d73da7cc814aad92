"""Switching functions and the per-type-pair switching function matrix.

A switching function maps a distance ``r`` onto a weight that is 1 at short range
and decays smoothly to exactly 0 at a finite cutoff ``d_max``. With
``x = (r - d0) / r0`` the supported kinds are:

* ``RATIONAL``: ``(1 - x^nn) / (1 - x^mm)``
* ``EXP``: ``exp(-x)``
* ``GAUSSIAN``: ``exp(-x^2 / 2)``
* ``SMAP``: ``(1 + c x^a)^d`` with ``c = 2^(a/b) - 1`` and ``d = -b/a``
* ``CUBIC``: ``(x - 1)^2 (1 + 2x)`` with ``r0 = d_max - d0``
* ``TANH``: ``1 - tanh(x)``

Functions are written as text, e.g. ``{RATIONAL R_0=1.2 NN=6 MM=12 D_MAX=2.5}``.
Unless ``NOSTRETCH`` is given, the value is rescaled so that it is exactly 1 at
``r = 0`` and exactly 0 at ``d_max``.

Example::

    matrix = SwitchingFunctionMatrix(n_types=2)
    matrix.set(0, 0, "{RATIONAL R_0=1.0}")
    matrix.set(0, 1, "{GAUSSIAN R_0=0.8 D_MAX=2.0}")
    matrix.set(1, 1, "{EXP R_0=0.5}")
    weights, dfunc = matrix.evaluate(types_a, types_b, distances)
"""

import math
from dataclasses import dataclass, field
from enum import StrEnum

import torch

from torch_adjmat.errors import ConfigurationError, MissingKeywordError
from torch_adjmat.transforms import safe_mask


# Value of the unstretched function at which a default cutoff is placed
DEFAULT_EPSILON = 1e-5
# Half width of the band around x = 1 where the rational limit is used
RATIONAL_TOLERANCE = 1e-8


class SwitchingType(StrEnum):
    """Enumeration of the available switching function shapes."""

    RATIONAL = "RATIONAL"
    EXP = "EXP"
    GAUSSIAN = "GAUSSIAN"
    SMAP = "SMAP"
    CUBIC = "CUBIC"
    TANH = "TANH"


_FLOAT_KEYS = {"R_0": "r0", "D_0": "d0", "D_MAX": "d_max"}
_INT_KEYS = {"NN": "nn", "MM": "mm", "A": "a", "B": "b"}


def _rational_value(x: torch.Tensor, nn: int, mm: int) -> torch.Tensor:
    near = torch.abs(x - 1.0) < RATIONAL_TOLERANCE
    x = torch.where(near, torch.full_like(x, 0.5), x)
    value = (1.0 - x.pow(nn)) / (1.0 - x.pow(mm))
    return torch.where(near, torch.full_like(x, nn / mm), value)


def _rational_derivative(x: torch.Tensor, nn: int, mm: int) -> torch.Tensor:
    near = torch.abs(x - 1.0) < RATIONAL_TOLERANCE
    x = torch.where(near, torch.full_like(x, 0.5), x)
    num = 1.0 - x.pow(nn)
    den = 1.0 - x.pow(mm)
    deriv = (-nn * x.pow(nn - 1) * den + num * mm * x.pow(mm - 1)) / den.square()
    return torch.where(near, torch.full_like(x, 0.5 * nn * (nn - mm) / mm), deriv)


@dataclass(frozen=True)
class SwitchingFunction:
    """A decaying function of distance with a finite cutoff.

    Attributes:
        kind (SwitchingType): Functional form.
        r0 (float): Length scale. For ``CUBIC`` it is derived as ``d_max - d0``.
        d0 (float): Distance below which the value is 1.
        d_max (float): Distance at and beyond which value and derivative vanish.
            Defaults to the distance where the unstretched function reaches
            ``DEFAULT_EPSILON``.
        nn (int): Numerator exponent of ``RATIONAL``.
        mm (int): Denominator exponent of ``RATIONAL``; 0 means ``2 * nn``.
        a (int): First exponent of ``SMAP``.
        b (int): Second exponent of ``SMAP``.
        stretch (bool): Whether to rescale the value to hit 0 exactly at ``d_max``.
    """

    kind: SwitchingType
    r0: float = 0.0
    d0: float = 0.0
    d_max: float | None = None
    nn: int = 6
    mm: int = 0
    a: int = 0
    b: int = 0
    stretch: bool = True
    scale: float = field(init=False, default=1.0)
    shift: float = field(init=False, default=0.0)

    def __post_init__(self) -> None:
        """Validate the parameters and resolve the derived constants."""
        self._set("kind", SwitchingType(self.kind))
        if self.d0 < 0:
            raise ConfigurationError(f"D_0 must be non-negative, got {self.d0}")

        if self.kind == SwitchingType.CUBIC:
            if self.d_max is None:
                raise ConfigurationError("D_MAX is required for CUBIC switching")
            self._set("r0", self.d_max - self.d0)
        elif self.r0 <= 0:
            raise ConfigurationError(f"R_0 must be positive, got {self.r0}")

        if self.kind == SwitchingType.RATIONAL:
            if self.mm == 0:
                self._set("mm", 2 * self.nn)
            if self.nn <= 0 or self.mm <= self.nn:
                raise ConfigurationError(
                    f"RATIONAL switching needs 0 < NN < MM, got NN={self.nn} MM={self.mm}"
                )
        if self.kind == SwitchingType.SMAP and (self.a <= 0 or self.b <= 0):
            raise ConfigurationError(
                f"SMAP switching needs positive A and B, got A={self.a} B={self.b}"
            )

        if self.d_max is None:
            self._set("d_max", self.d0 + self.r0 * self._default_reduced_cutoff())
        if self.d_max <= self.d0:
            raise ConfigurationError(
                f"D_MAX ({self.d_max}) must be larger than D_0 ({self.d0})"
            )

        if self.stretch:
            ends = torch.tensor([0.0, self.d_max], dtype=torch.float64)
            s0, sd = self._unstretched(ends).tolist()
            self._set("scale", 1.0 / (s0 - sd))
            self._set("shift", -sd / (s0 - sd))

    def _set(self, name: str, value: object) -> None:
        object.__setattr__(self, name, value)

    @property
    def smap_c(self) -> float:
        """Prefactor ``c = 2^(a/b) - 1`` of the SMAP form."""
        return 2.0 ** (self.a / self.b) - 1.0

    @property
    def smap_d(self) -> float:
        """Exponent ``d = -b/a`` of the SMAP form."""
        return -self.b / self.a

    @property
    def description(self) -> str:
        """Human readable summary of the function and its parameters."""
        params = f"d0={self.d0:g}, r_0={self.r0:g}"
        if self.kind == SwitchingType.RATIONAL:
            params += f", nn={self.nn}, mm={self.mm}"
        elif self.kind == SwitchingType.SMAP:
            params += f", a={self.a}, b={self.b}"
        text = f"{self.kind.lower()} switching function with parameters {params}"
        text += f" and cutoff d_max={self.d_max:g}"
        return text if self.stretch else f"{text} (not stretched)"

    @classmethod
    def from_string(cls, definition: str) -> "SwitchingFunction":
        """Parse a textual switching function definition.

        Args:
            definition (str): Definition such as ``{RATIONAL R_0=1.0 NN=6 MM=12}``. The
                surrounding braces are optional.

        Returns:
            SwitchingFunction: The parsed function.

        Raises:
            ConfigurationError: If the text is empty, names an unknown kind or
                contains a token that cannot be read.
        """
        text = definition.strip()
        if text.startswith("{") and text.endswith("}"):
            text = text[1:-1]
        tokens = text.split()
        if not tokens:
            raise ConfigurationError("empty switching function definition")

        name, *rest = tokens
        try:
            kind = SwitchingType(name.upper())
        except ValueError:
            raise ConfigurationError(
                f"unknown switching function type {name!r}, expected one of "
                f"{', '.join(SwitchingType)}"
            ) from None

        kwargs: dict[str, object] = {"kind": kind}
        for token in rest:
            key, sep, value = token.partition("=")
            key = key.upper()
            if not sep:
                if key == "NOSTRETCH":
                    kwargs["stretch"] = False
                elif key != "STRETCH":
                    raise ConfigurationError(
                        f"unrecognised flag {token!r} in {definition!r}"
                    )
                continue
            if key not in _FLOAT_KEYS and key not in _INT_KEYS:
                raise ConfigurationError(
                    f"unrecognised keyword {key!r} in switching function {definition!r}"
                )
            try:
                if key in _FLOAT_KEYS:
                    kwargs[_FLOAT_KEYS[key]] = float(value)
                else:
                    kwargs[_INT_KEYS[key]] = int(value)
            except ValueError:
                raise ConfigurationError(
                    f"could not read {key} from {value!r} in {definition!r}"
                ) from None

        if kind != SwitchingType.CUBIC and "r0" not in kwargs:
            raise ConfigurationError(
                f"R_0 is required in switching function {definition!r}"
            )
        return cls(**kwargs)

    def _default_reduced_cutoff(self) -> float:
        """Reduced distance at which the unstretched value falls to the epsilon."""
        eps = DEFAULT_EPSILON
        if self.kind == SwitchingType.RATIONAL:
            return eps ** (1.0 / (self.nn - self.mm))
        if self.kind == SwitchingType.EXP:
            return -math.log(eps)
        if self.kind == SwitchingType.GAUSSIAN:
            return math.sqrt(-2.0 * math.log(eps))
        if self.kind == SwitchingType.SMAP:
            return ((eps ** (1.0 / self.smap_d) - 1.0) / self.smap_c) ** (1.0 / self.a)
        if self.kind == SwitchingType.TANH:
            return math.atanh(1.0 - eps)
        raise ConfigurationError(f"no default cutoff for {self.kind}")

    def _reduced_value(self, x: torch.Tensor) -> torch.Tensor:
        if self.kind == SwitchingType.RATIONAL:
            return _rational_value(x, self.nn, self.mm)
        if self.kind == SwitchingType.EXP:
            return torch.exp(-x)
        if self.kind == SwitchingType.GAUSSIAN:
            return torch.exp(-0.5 * x.square())
        if self.kind == SwitchingType.SMAP:
            return (1.0 + self.smap_c * x.pow(self.a)).pow(self.smap_d)
        if self.kind == SwitchingType.CUBIC:
            return (x - 1.0).square() * (1.0 + 2.0 * x)
        return 1.0 - torch.tanh(x)

    def _reduced_derivative(self, x: torch.Tensor) -> torch.Tensor:
        if self.kind == SwitchingType.RATIONAL:
            return _rational_derivative(x, self.nn, self.mm)
        if self.kind == SwitchingType.EXP:
            return -torch.exp(-x)
        if self.kind == SwitchingType.GAUSSIAN:
            return -x * torch.exp(-0.5 * x.square())
        if self.kind == SwitchingType.SMAP:
            sx = self.smap_c * x.pow(self.a)
            return -self.b * sx / x * (1.0 + sx).pow(self.smap_d) / (1.0 + sx)
        if self.kind == SwitchingType.CUBIC:
            return 6.0 * x * (x - 1.0)
        return -(1.0 - torch.tanh(x).square())

    def _unstretched(self, distances: torch.Tensor) -> torch.Tensor:
        x = (distances - self.d0) / self.r0
        return safe_mask(x > 0, self._reduced_value, x, 1.0, safe_value=0.5)

    def evaluate(self, distances: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Evaluate the weight and its derivative divided by distance.

        Args:
            distances (torch.Tensor): Distances of any shape.

        Returns:
            tuple[torch.Tensor, torch.Tensor]:
                - Weights with the shape of ``distances``.
                - ``(dw/dr) / r`` with the shape of ``distances``. Zero where the
                  weight is constant, including ``r = 0``.
        """
        x = (distances - self.d0) / self.r0
        switching = (x > 0) & (distances < self.d_max)
        inside = distances < self.d_max

        value = safe_mask(switching, self._reduced_value, x, safe_value=0.5)
        value = torch.where(
            switching,
            value * self.scale + self.shift,
            torch.where(inside, torch.ones_like(x), torch.zeros_like(x)),
        )

        deriv = safe_mask(switching, self._reduced_derivative, x, safe_value=0.5)
        safe_r = torch.where(switching, distances, torch.ones_like(distances))
        dfunc = deriv * (self.scale / self.r0) / safe_r
        return value, dfunc

    def __call__(self, distances: torch.Tensor) -> torch.Tensor:
        """Evaluate the weights only."""
        return self.evaluate(distances)[0]


class SwitchingFunctionMatrix:
    """Symmetric matrix of switching functions indexed by node type.

    Entries are stored once under the normalised key ``(min(a, b), max(a, b))`` so
    ``(a, b)`` and ``(b, a)`` can never disagree.

    Attributes:
        n_types (int): Number of node types, i.e. the matrix dimension.
    """

    def __init__(self, n_types: int) -> None:
        """Create an empty matrix.

        Args:
            n_types (int): Number of node types.
        """
        if n_types < 1:
            raise ValueError(f"n_types must be at least 1, got {n_types}")
        self.n_types = n_types
        self._functions: dict[tuple[int, int], SwitchingFunction] = {}

    def _key(self, type_a: int, type_b: int) -> tuple[int, int]:
        for t in (type_a, type_b):
            if not 0 <= t < self.n_types:
                raise ValueError(f"type index {t} out of range [0, {self.n_types})")
        return (min(type_a, type_b), max(type_a, type_b))

    def set(
        self, type_a: int, type_b: int, definition: "str | SwitchingFunction"
    ) -> SwitchingFunction:
        """Parse and store the switching function for a pair of types.

        Args:
            type_a (int): First node type.
            type_b (int): Second node type.
            definition (str | SwitchingFunction): Textual definition or a ready function.

        Returns:
            SwitchingFunction: The stored function.

        Raises:
            MissingKeywordError: If ``definition`` is an empty string.
            ConfigurationError: If ``definition`` cannot be parsed.
        """
        key = self._key(type_a, type_b)
        if isinstance(definition, str):
            if not definition.strip():
                raise MissingKeywordError(
                    "SWITCH", f"missing switching function for types {key}"
                )
            definition = SwitchingFunction.from_string(definition)
        self._functions[key] = definition
        return definition

    def __getitem__(self, types: tuple[int, int]) -> SwitchingFunction:
        key = self._key(*types)
        if key not in self._functions:
            raise ConfigurationError(f"no switching function set for types {key}")
        return self._functions[key]

    def __contains__(self, types: tuple[int, int]) -> bool:
        return self._key(*types) in self._functions

    @property
    def missing_pairs(self) -> list[tuple[int, int]]:
        """Type pairs ``(i, j)`` with ``i <= j`` that have no function yet."""
        return [
            (i, j)
            for i in range(self.n_types)
            for j in range(i, self.n_types)
            if (i, j) not in self._functions
        ]

    @property
    def is_complete(self) -> bool:
        """Whether every type pair has a switching function."""
        return not self.missing_pairs

    @property
    def max_cutoff(self) -> float:
        """Largest ``d_max`` over all type pairs, used for spatial pruning."""
        if not self.is_complete:
            raise ConfigurationError(
                f"switching functions missing for type pairs {self.missing_pairs}"
            )
        return max(sf.d_max for sf in self._functions.values())

    def cutoff_matrix(
        self, device: torch.device | None = None, dtype: torch.dtype = torch.float64
    ) -> torch.Tensor:
        """Matrix of ``d_max`` values with shape [n_types, n_types]."""
        cutoffs = torch.zeros((self.n_types, self.n_types), dtype=dtype, device=device)
        for i in range(self.n_types):
            for j in range(self.n_types):
                cutoffs[i, j] = self[i, j].d_max
        return cutoffs

    def evaluate(
        self,
        type_a: torch.Tensor | int,
        type_b: torch.Tensor | int,
        distances: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Evaluate the type-pair specific switching function for each distance.

        Args:
            type_a (torch.Tensor | int): Type of the first node of each pair.
            type_b (torch.Tensor | int): Type of the second node of each pair.
            distances (torch.Tensor): Pair distances.

        Returns:
            tuple[torch.Tensor, torch.Tensor]: Weights and ``(dw/dr) / r``, both
                with the shape of ``distances``.
        """
        distances = torch.as_tensor(distances)
        type_a = torch.as_tensor(type_a, device=distances.device).expand_as(distances)
        type_b = torch.as_tensor(type_b, device=distances.device).expand_as(distances)
        lo = torch.minimum(type_a, type_b)
        hi = torch.maximum(type_a, type_b)

        weights = torch.zeros_like(distances)
        dfunc = torch.zeros_like(distances)
        covered = torch.zeros_like(distances, dtype=torch.bool)
        for (i, j), sf in self._functions.items():
            mask = (lo == i) & (hi == j)
            if not mask.any():
                continue
            w, dw = sf.evaluate(distances[mask])
            weights[mask] = w
            dfunc[mask] = dw
            covered |= mask

        if not covered.all():
            pairs = torch.stack((lo[~covered], hi[~covered]), dim=1)
            missing = [tuple(pair) for pair in torch.unique(pairs, dim=0).tolist()]
            raise ConfigurationError(
                f"no switching function set for type pairs {missing}"
            )
        return weights, dfunc
