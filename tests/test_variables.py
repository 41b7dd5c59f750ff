from nedisasm.variables import TrackedVariable, VariablePool


def _make_variable(*values: int) -> TrackedVariable:
    variable = TrackedVariable(name="VAR0", address=0x10)
    for value in values:
        variable.observe(value)
    return variable


def test_boolean_needs_two_distinct_values_within_one() -> None:
    assert _make_variable(0, 1).is_boolean
    assert _make_variable(1, 0, 1).is_boolean
    assert not _make_variable(1, 1).is_boolean
    assert not _make_variable(0, 2).is_boolean
    assert not _make_variable(1).is_boolean


def test_render_value_uses_true_false_for_booleans() -> None:
    boolean = _make_variable(0, 1)
    numeric = _make_variable(0, 5)

    assert boolean.render_value(1) == "true"
    assert boolean.render_value(0) == "false"
    assert numeric.render_value(5) == "5"


def test_pool_names_follow_first_appearance_and_reset_on_clear() -> None:
    pool = VariablePool("GLOBAL->")

    first = pool.allocate(0x20)
    second = pool.allocate(0x10)

    assert first.name == "GLOBAL->VAR0"
    assert second.name == "GLOBAL->VAR1"
    assert pool.allocate(0x20) is first
    assert 0x10 in pool
    assert len(pool) == 2

    pool.clear()
    assert pool.get(0x20) is None
    assert pool.allocate(0x30).name == "GLOBAL->VAR0"
