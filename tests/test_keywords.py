import logging

import pytest
import torch

from torch_adjmat.contact_matrix import ContactMatrix
from torch_adjmat.errors import (
    ConfigurationError,
    MissingKeywordError,
    UnsupportedConfigurationError,
)
from torch_adjmat.keywords import (
    ContactMatrixConfig,
    numbered_keyword_base,
    parse_keywords,
    read_switching_matrix,
    switch_keyword,
)
from torch_adjmat.nodes import AtomNodes
from torch_adjmat.switching import SwitchingType


TWO_GROUP_SWITCHES = {
    "SWITCH11": "{RATIONAL R_0=1.0 D_MAX=2.5}",
    "SWITCH12": "{GAUSSIAN R_0=0.8 D_MAX=2.4}",
    "SWITCH22": "{EXP R_0=0.4 D_MAX=2.0}",
}


def test_parse_keywords_splits_tokens_and_flags() -> None:
    keywords = parse_keywords(
        "CONTACT_MATRIX ATOMS=ow,hw  SWITCH11={RATIONAL R_0=0.3 NN=6}\n"
        "wtol=1e-4 NOPBC"
    )
    assert keywords == {
        "ATOMS": "ow,hw",
        "SWITCH11": "{RATIONAL R_0=0.3 NN=6}",
        "WTOL": "1e-4",
        "NOPBC": "",
    }


def test_parse_keywords_keeps_nested_braces() -> None:
    keywords = parse_keywords("SWITCH={RATIONAL {R_0=1.0} D_MAX=2.0}")
    assert keywords == {"SWITCH": "{RATIONAL {R_0=1.0} D_MAX=2.0}"}


@pytest.mark.parametrize(
    "line",
    [
        "SWITCH={RATIONAL R_0=1.0",
        "SWITCH=RATIONAL R_0=1.0}",
        "ATOMS=a ATOMS=b",
        "ATOMS=a =b",
    ],
)
def test_parse_keywords_rejects_malformed_lines(line: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_keywords(line)


@pytest.mark.parametrize(
    ("index", "n_types", "expected"),
    [(0, 2, 10), (1, 2, 20), (8, 9, 90), (0, 10, 100), (98, 99, 9900)],
)
def test_numbered_keyword_base(index: int, n_types: int, expected: int) -> None:
    assert numbered_keyword_base(index, n_types) == expected


def test_numbered_keyword_base_rejects_100_types() -> None:
    with pytest.raises(UnsupportedConfigurationError):
        numbered_keyword_base(0, 100)


@pytest.mark.parametrize(
    ("type_a", "type_b", "n_types", "expected"),
    [
        (0, 0, 1, "SWITCH"),
        (0, 0, 2, "SWITCH11"),
        (0, 1, 2, "SWITCH12"),
        (1, 0, 2, "SWITCH21"),
        (1, 1, 2, "SWITCH22"),
        (0, 0, 12, "SWITCH101"),
        (2, 11, 12, "SWITCH312"),
        (11, 11, 12, "SWITCH1212"),
    ],
)
def test_switch_keyword(type_a: int, type_b: int, n_types: int, expected: str) -> None:
    assert switch_keyword(type_a, type_b, n_types) == expected


def test_read_single_group_switch() -> None:
    matrix = read_switching_matrix({"SWITCH": "{EXP R_0=0.5}", "ATOMS": "a"}, 1)
    assert matrix.is_complete
    assert matrix[0, 0].kind == SwitchingType.EXP

    with pytest.raises(MissingKeywordError, match="missing SWITCH keyword"):
        read_switching_matrix({}, 1)


def test_read_two_group_numbered_switches(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="torch_adjmat.keywords"):
        matrix = read_switching_matrix(TWO_GROUP_SWITCHES, 2)

    assert matrix.is_complete
    assert matrix[0, 0].kind == SwitchingType.RATIONAL
    assert matrix[1, 0].kind == SwitchingType.GAUSSIAN
    assert matrix[0, 1] is matrix[1, 0]
    assert matrix[1, 1].kind == SwitchingType.EXP
    assert matrix.max_cutoff == pytest.approx(2.5)
    assert "Node types 1 and 2 must be within gaussian" in caplog.text
    assert caplog.text.count("must be within") == 3


def test_missing_switch22_is_named() -> None:
    switches = {k: v for k, v in TWO_GROUP_SWITCHES.items() if k != "SWITCH22"}
    with pytest.raises(MissingKeywordError, match="SWITCH22") as exc_info:
        read_switching_matrix(switches, 2)
    assert exc_info.value.keyword == "SWITCH22"


def test_empty_numbered_switch_counts_as_missing() -> None:
    switches = TWO_GROUP_SWITCHES | {"SWITCH11": ""}
    with pytest.raises(MissingKeywordError, match="SWITCH11"):
        read_switching_matrix(switches, 2)


def test_mirrored_switch_is_an_alias() -> None:
    switches = {
        "SWITCH11": TWO_GROUP_SWITCHES["SWITCH11"],
        "SWITCH21": TWO_GROUP_SWITCHES["SWITCH12"],
        "SWITCH22": TWO_GROUP_SWITCHES["SWITCH22"],
    }
    matrix = read_switching_matrix(switches, 2)
    assert matrix[0, 1].kind == SwitchingType.GAUSSIAN

    same = TWO_GROUP_SWITCHES | {"SWITCH21": TWO_GROUP_SWITCHES["SWITCH12"]}
    assert read_switching_matrix(same, 2).is_complete

    conflicting = TWO_GROUP_SWITCHES | {"SWITCH21": "{EXP R_0=1.0}"}
    with pytest.raises(ConfigurationError, match="differently"):
        read_switching_matrix(conflicting, 2)


def test_unused_switch_keywords_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="SWITCH33"):
        read_switching_matrix(TWO_GROUP_SWITCHES | {"SWITCH33": "{EXP R_0=1.0}"}, 2)
    with pytest.raises(ConfigurationError, match="SWITCH11"):
        read_switching_matrix({"SWITCH": "{EXP R_0=1.0}", "SWITCH11": "{EXP R_0=1.0}"}, 1)


def test_hundred_groups_are_unsupported() -> None:
    with pytest.raises(UnsupportedConfigurationError):
        read_switching_matrix({}, 100)


def test_invalid_switch_definition_propagates() -> None:
    with pytest.raises(ConfigurationError, match="unknown switching function"):
        read_switching_matrix({"SWITCH": "{FERMI R_0=1.0}"}, 1)


def test_config_from_line() -> None:
    config = ContactMatrixConfig.from_keywords(
        "CONTACT_MATRIX ATOMS=a,b WTOL=0.01 NOPBC "
        + " ".join(f"{k}={v}" for k, v in TWO_GROUP_SWITCHES.items())
    )
    assert config.atoms == ("a", "b")
    assert config.n_types == 2
    assert config.weight_tolerance == pytest.approx(0.01)
    assert not config.pbc
    assert dict(config.switches) == TWO_GROUP_SWITCHES


def test_config_from_mapping_defaults() -> None:
    config = ContactMatrixConfig.from_keywords(
        {"atoms": "water", "switch": "{RATIONAL R_0=1.0}"}
    )
    assert config.atoms == ("water",)
    assert config.weight_tolerance == 0.0
    assert config.pbc
    assert config.switching_matrix().is_complete


@pytest.mark.parametrize(
    ("source", "error"),
    [
        ("SWITCH={EXP R_0=1.0}", MissingKeywordError),
        ("ATOMS= SWITCH={EXP R_0=1.0}", MissingKeywordError),
        ("ATOMS=a,,b SWITCH={EXP R_0=1.0}", ConfigurationError),
        ("ATOMS=a SWITCH={EXP R_0=1.0} LOWMEM", ConfigurationError),
        ("ATOMS=a SWITCH={EXP R_0=1.0} WTOL=small", ConfigurationError),
        ("ATOMS=a SWITCH={EXP R_0=1.0} NOPBC=yes", ConfigurationError),
    ],
)
def test_config_rejects_invalid_keywords(
    source: str, error: type[ConfigurationError]
) -> None:
    with pytest.raises(error):
        ContactMatrixConfig.from_keywords(source)


def test_config_builds_contact_matrix() -> None:
    config = ContactMatrixConfig.from_keywords(
        {"ATOMS": "b,a", "WTOL": "0.1", "NOPBC": "", **TWO_GROUP_SWITCHES}
    )
    groups = [AtomNodes("a", [0, 1]), AtomNodes("b", [2, 3])]
    model = config.build(groups, use_neighbor_list=False, task_chunk_size=2)

    assert isinstance(model, ContactMatrix)
    assert [group.name for group in model.nodes.groups] == ["b", "a"]
    assert model.bookkeeper.n_tasks == 6
    assert model.bookkeeper.range_of(0, 0) == (0, 1)
    assert model.bookkeeper.range_of(0, 1) == (1, 5)
    assert model.bookkeeper.range_of(1, 1) == (5, 6)
    assert model.weight_tolerance == pytest.approx(0.1)
    assert not model.pbc
    assert not model.use_neighbor_list
    assert model.task_chunk_size == 2
    assert model.cutoff == pytest.approx(2.5)


def test_config_build_with_mapping_and_unknown_label() -> None:
    config = ContactMatrixConfig.from_keywords(
        {"ATOMS": "a,c", **TWO_GROUP_SWITCHES}
    )
    groups = {"a": AtomNodes("a", [0]), "b": AtomNodes("b", [1])}
    with pytest.raises(ConfigurationError, match="unknown node groups"):
        config.build(groups)


def test_config_build_requires_every_switch() -> None:
    switches = {k: v for k, v in TWO_GROUP_SWITCHES.items() if k != "SWITCH22"}
    config = ContactMatrixConfig.from_keywords({"ATOMS": "a,b", **switches})
    groups = [AtomNodes("a", [0, 1]), AtomNodes("b", [2, 3])]
    with pytest.raises(MissingKeywordError, match="SWITCH22"):
        config.build(groups)


def test_config_build_rejects_hundred_groups() -> None:
    labels = [f"g{idx}" for idx in range(100)]
    config = ContactMatrixConfig.from_keywords({"ATOMS": ",".join(labels)})
    groups = [AtomNodes(label, torch.tensor([idx])) for idx, label in enumerate(labels)]
    with pytest.raises(UnsupportedConfigurationError):
        config.build(groups)
