"""Tests for the rule record, the registry and the built-in catalog."""

from __future__ import annotations

import pytest

from eloizer.core.errors import ConfigurationError
from eloizer.core.raw import node
from eloizer.core.types import RuleCategory, Severity
from eloizer.rules import Match, Rule, registry, rule


def _run(resolve, rule_id, *units):
    found = registry.get_by_id(rule_id)
    assert found is not None, rule_id
    return found.evaluate(resolve(*units))


def _run_all(resolve, *units):
    context = resolve(*units)
    return [f for r in registry.get_all() for f in r.evaluate(context)]


def _lamports(rs, name):
    """``**<name>.lamports.borrow_mut()``"""
    return rs.deref(rs.deref(rs.mcall(rs.fa(rs.path(name), "lamports"), "borrow_mut")))


def _next_account(rs, name, line):
    return rs.let(name, node("try", "", rs.call("next_account_info", rs.path("iter"))), line=line)


_NATIVE_PARAMS = [("program_id", "&Pubkey"), ("accounts", "&[AccountInfo]"), ("amount", "u64")]


# ── Rule record and registry ─────────────────────────────────────────────────


class TestRuleRecord:
    def test_decorator(self):
        @rule(id="demo-rule", title="Demo", severity=Severity.LOW, categories=("general",))
        def demo(context):
            """Finds nothing."""
            return []

        assert isinstance(demo, Rule)
        assert demo.categories == frozenset({RuleCategory.GENERAL})
        assert demo.description == "Finds nothing."

    def test_invalid_id(self):
        with pytest.raises(ConfigurationError, match="kebab-case"):
            Rule(id="Not An Id", title="x", severity=Severity.LOW,
                 categories=frozenset({RuleCategory.GENERAL}), matcher=lambda c: [])

    def test_severity_string_is_parsed(self):
        r = Rule(id="x", title="x", severity="high", categories=frozenset({"solana"}), matcher=lambda c: [])
        assert r.severity is Severity.HIGH

    def test_categories_required(self):
        with pytest.raises(ConfigurationError, match="no category"):
            Rule(id="x", title="x", severity=Severity.LOW, categories=frozenset(), matcher=lambda c: [])

    def test_evaluate_stamps_rule_identity(self, resolve, missing_signer_unit):
        context = resolve(missing_signer_unit())
        span = context.handlers[0].span
        r = Rule(id="stamp", title="Stamp", severity=Severity.MEDIUM,
                 categories=frozenset({RuleCategory.GENERAL}),
                 matcher=lambda c: [Match(span=span, message="here", metadata={"k": 1})])
        [finding] = r.evaluate(context)
        assert finding.rule_id == "stamp"
        assert finding.severity is Severity.MEDIUM
        assert finding.location.file_path == span.file
        assert finding.metadata == {"k": 1}


class TestRegistry:
    def test_catalog_size(self):
        assert registry.count() == 23

    def test_ids_are_unique_kebab_case(self):
        ids = [r.id for r in registry.get_all()]
        assert len(ids) == len(set(ids))
        assert all(i == i.lower() and " " not in i for i in ids)

    def test_lookup_is_case_insensitive(self):
        assert registry.get_by_id("PDA-Sharing-CWE-345") is registry.get_by_id("pda-sharing-cwe-345")
        assert registry.get_by_id("no-such-rule") is None

    def test_ordered_by_severity(self):
        ranks = [r.severity.rank for r in registry.get_all()]
        assert ranks == sorted(ranks)

    def test_filters(self):
        assert all(r.severity is Severity.HIGH for r in registry.get_by_severity("high"))
        assert all(RuleCategory.ANCHOR in r.categories for r in registry.get_by_category("anchor"))

    def test_every_rule_has_texts(self):
        for r in registry.get_all():
            assert r.title and r.description and r.recommendation, r.id


# ── PDA ──────────────────────────────────────────────────────────────────────


def _pda_unit(rs, path, struct, fn_name, prefix='b"vault"'):
    return rs.unit(
        path,
        rs.accounts_struct(
            struct,
            rs.field("vault", "Account<'info, Vault>",
                     rs.account(rs.flag("mut"), rs.seeds(rs.lit(prefix), rs.key_seed("authority")), rs.flag("bump")),
                     line=5),
            rs.field("authority", "Signer<'info>", line=8),
        ),
        rs.handler(fn_name, struct, rs.stmt(rs.ok()), line=20),
    )


class TestPdaRules:
    def test_seed_sharing_reported_once(self, resolve, seed_sharing_units):
        findings = _run_all(resolve, *seed_sharing_units)
        high = [f for f in findings if f.severity is Severity.HIGH]
        assert len(high) == 1
        [finding] = high
        assert finding.rule_id == "pda-sharing-cwe-345"
        assert finding.location.file_path == "programs/vault/src/instructions/deposit.rs"
        assert finding.location.start_line == 5
        assert {(loc.file_path, loc.start_line) for loc in finding.related_locations} == {
            ("programs/vault/src/instructions/deposit.rs", 20),
            ("programs/vault/src/instructions/withdraw.rs", 20),
        }
        assert finding.metadata["signature"] == ("literal", "account_key")

    def test_distinct_literal_prefix_is_safe(self, rs, resolve):
        units = [
            _pda_unit(rs, "src/deposit.rs", "Deposit", "deposit", 'b"vault"'),
            _pda_unit(rs, "src/pool.rs", "Join", "join", 'b"pool"'),
        ]
        assert _run(resolve, "pda-sharing-cwe-345", *units) == []

    def test_single_instruction_is_safe(self, rs, resolve):
        assert _run(resolve, "pda-sharing-cwe-345", _pda_unit(rs, "src/a.rs", "A", "a")) == []

    def test_instruction_arg_bump(self, rs, resolve):
        unit = rs.unit(
            "src/lib.rs",
            rs.accounts_struct(
                "Claim",
                rs.field("escrow", "Account<'info, Escrow>",
                         rs.account(rs.seeds(rs.lit('b"escrow"')), rs.kv("bump", rs.path("bump"))), line=4),
                attrs=(rs.attr("instruction", node("meta_path", "bump: u8")),),
            ),
        )
        [finding] = _run(resolve, "non-canonical-bump-cwe-330", unit)
        assert "bump" in finding.message

    def test_create_program_address_without_find(self, rs, resolve):
        unit = rs.unit(
            "src/lib.rs",
            rs.fn("derive", [("bump", "u8")],
                  rs.stmt(rs.call("Pubkey::create_program_address", rs.path("seeds"), rs.path("program_id"),
                                  line=3), line=3),
                  line=1),
        )
        assert len(_run(resolve, "non-canonical-bump-cwe-330", unit)) == 1

    def test_static_seeds(self, rs, resolve):
        unit = rs.unit(
            "src/lib.rs",
            rs.accounts_struct(
                "Init",
                rs.field("config", "Account<'info, Config>",
                         rs.account(rs.seeds(rs.lit('b"config"')), rs.flag("bump")), line=4),
            ),
        )
        [finding] = _run(resolve, "static-pda-seeds", unit)
        assert finding.severity is Severity.INFORMATIONAL


# ── Access control ───────────────────────────────────────────────────────────


class TestMissingSigner:
    def test_reported(self, resolve, missing_signer_unit):
        [finding] = _run(resolve, "missing-signer-check-cwe-862", missing_signer_unit())
        assert finding.location.file_path == "programs/vault/src/lib.rs"
        assert finding.location.start_line == 5
        assert finding.metadata["account"] == "authority"

    def test_signer_check_clears_only_that_finding(self, resolve, missing_signer_unit):
        before = _run_all(resolve, missing_signer_unit(False))
        after = _run_all(resolve, missing_signer_unit(True))
        assert any(f.rule_id == "missing-signer-check-cwe-862" for f in before)
        assert not any(f.rule_id == "missing-signer-check-cwe-862" for f in after)
        others = lambda fs: sorted(  # noqa: E731
            (f.rule_id, f.location.start_line) for f in fs if f.rule_id != "missing-signer-check-cwe-862"
        )
        assert others(before) == others(after)

    def test_native_lamports_source(self, rs, resolve):
        def unit(checked):
            stmts = [_next_account(rs, "source", 2), _next_account(rs, "dest", 3)]
            if checked:
                stmts.append(node("if", "", node("unary", "!", rs.fa(rs.path("source"), "is_signer"), line=4),
                                  node("block", "", node("return", "", rs.call("Err", rs.path("e")))), line=4))
            stmts.append(rs.stmt(rs.assign("-=", _lamports(rs, "source"), rs.path("amount"), line=5), line=5))
            stmts.append(rs.stmt(rs.assign("+=", _lamports(rs, "dest"), rs.path("amount"), line=6), line=6))
            return rs.unit("programs/native/src/processor.rs",
                           rs.fn("process_withdraw", _NATIVE_PARAMS, *stmts, line=1))

        [finding] = _run(resolve, "missing-signer-check-cwe-862", unit(False))
        assert "source" in finding.message
        assert "debited" in finding.message
        assert _run(resolve, "missing-signer-check-cwe-862", unit(True)) == []

    def test_shared_struct_judged_per_handler(self, rs, resolve):
        def unit(*checked_in):
            handlers = []
            for i, name in enumerate(("checked", "unchecked")):
                stmts = []
                if name in checked_in:
                    stmts.append(rs.stmt(rs.macro("require", rs.fa(rs.acc("authority"), "is_signer"),
                                                  line=21 + 10 * i), line=21 + 10 * i))
                stmts.append(rs.stmt(rs.ok(), line=22 + 10 * i))
                handlers.append(rs.handler(name, "Shared", *stmts, line=20 + 10 * i))
            return rs.unit(
                "src/lib.rs",
                rs.accounts_struct(
                    "Shared",
                    rs.field("authority", "AccountInfo<'info>", rs.account(rs.flag("mut")),
                             line=4, doc="/// CHECK: checked in handlers"),
                    line=3,
                ),
                rs.program("p", *handlers),
            )

        [finding] = _run(resolve, "missing-signer-check-cwe-862", unit("checked"))
        assert finding.location.start_line == 4
        assert _run(resolve, "missing-signer-check-cwe-862", unit("checked", "unchecked")) == []

    def test_mutable_non_authority_is_not_a_candidate(self, rs, resolve):
        unit = rs.unit(
            "src/lib.rs",
            rs.accounts_struct(
                "Scratch",
                rs.field("scratch", "AccountInfo<'info>", rs.account(rs.flag("mut")),
                         line=3, doc="/// CHECK: scratch space"),
            ),
            rs.handler("touch", "Scratch", rs.stmt(rs.ok()), line=10),
        )
        assert _run(resolve, "missing-signer-check-cwe-862", unit) == []

    def test_signer_type_is_safe(self, rs, resolve):
        unit = rs.unit("src/lib.rs", rs.accounts_struct("S", rs.field("authority", "Signer<'info>", line=3)))
        assert _run(resolve, "missing-signer-check-cwe-862", unit) == []


class TestOwnerRules:
    def _unit(self, rs, *constraint, doc="/// CHECK: read only"):
        attrs = (rs.account(*constraint),) if constraint else ()
        return rs.unit(
            "src/lib.rs",
            rs.accounts_struct("Read", rs.field("config", "UncheckedAccount<'info>", *attrs, line=4, doc=doc)),
            rs.handler(
                "read", "Read",
                rs.let("data", rs.mcall(rs.acc("config"), "try_borrow_data"), line=11),
                line=10,
            ),
        )

    def test_missing_owner(self, rs, resolve):
        [finding] = _run(resolve, "missing-owner-check-cwe-284", self._unit(rs))
        assert finding.metadata == {"account": "config", "documented": True}

    def test_owner_constraint_is_safe(self, rs, resolve):
        unit = self._unit(rs, rs.kv("owner", rs.path("crate::ID")))
        assert _run(resolve, "missing-owner-check-cwe-284", unit) == []

    def test_check_doc(self, rs, resolve):
        assert _run(resolve, "unchecked-account-doc", self._unit(rs)) == []
        assert len(_run(resolve, "unchecked-account-doc", self._unit(rs, doc=None))) == 1


class TestMissingHasOne:
    def _unit(self, rs, *vault_constraints):
        return rs.unit(
            "src/lib.rs",
            rs.state_struct("Vault", ("authority", "Pubkey"), ("amount", "u64"), line=40),
            rs.accounts_struct(
                "Withdraw",
                rs.field("vault", "Account<'info, Vault>", rs.account(rs.flag("mut"), *vault_constraints), line=4),
                rs.field("authority", "Signer<'info>", line=6),
            ),
        )

    def test_reported(self, rs, resolve):
        [finding] = _run(resolve, "missing-has-one-cwe-639", self._unit(rs))
        assert finding.metadata["field"] == "authority"
        assert len(finding.related_locations) == 2

    def test_has_one_is_safe(self, rs, resolve):
        unit = self._unit(rs, rs.kv("has_one", rs.path("authority")))
        assert _run(resolve, "missing-has-one-cwe-639", unit) == []


# ── CPI and external calls ───────────────────────────────────────────────────


class TestExternalCalls:
    def test_unknown_callee_reported(self, resolve, unknown_callee_unit):
        [finding] = _run(resolve, "unchecked-external-call-cwe-20", unknown_callee_unit())
        assert finding.location.start_line == 42
        assert finding.metadata["accounts"] == ("target",)
        assert finding.metadata["callee"] == "external_program::process"

    def test_owner_check_before_call_is_safe(self, resolve, unknown_callee_unit):
        assert _run(resolve, "unchecked-external-call-cwe-20", unknown_callee_unit(True)) == []

    def _cpi_unit(self, rs, program_type, read_after=False, reload=False):
        cpi_ctx = rs.call(
            "CpiContext::new",
            rs.mcall(rs.acc("token_program"), "to_account_info"),
            node("struct_lit", "Transfer",
                 node("field_value", "from", rs.mcall(rs.acc("vault"), "to_account_info"))),
        )
        stmts = [
            rs.let("cpi_ctx", cpi_ctx, line=11),
            rs.stmt(rs.call("token::transfer", rs.path("cpi_ctx"), rs.path("amount"), line=12), line=12),
        ]
        if reload:
            stmts.append(rs.stmt(rs.mcall(rs.acc("vault"), "reload", line=13), line=13))
        if read_after:
            stmts.append(rs.let("left", rs.fa(rs.acc("vault"), "amount", line=14), line=14))
        return rs.unit(
            "src/lib.rs",
            rs.accounts_struct(
                "Pay",
                rs.field("vault", "Account<'info, TokenAccount>", rs.account(rs.flag("mut")), line=3),
                rs.field("token_program", program_type, line=5),
            ),
            rs.handler("pay", "Pay", *stmts, line=10),
        )

    def test_arbitrary_cpi(self, rs, resolve):
        [finding] = _run(resolve, "arbitrary-cpi-cwe-829", self._cpi_unit(rs, "AccountInfo<'info>"))
        assert finding.metadata["program_account"] == "token_program"
        assert _run(resolve, "arbitrary-cpi-cwe-829", self._cpi_unit(rs, "Program<'info, Token>")) == []

    def test_stale_read_after_cpi(self, rs, resolve):
        unit = self._cpi_unit(rs, "Program<'info, Token>", read_after=True)
        [finding] = _run(resolve, "stale-account-after-cpi", unit)
        assert finding.location.start_line == 14
        reloaded = self._cpi_unit(rs, "Program<'info, Token>", read_after=True, reload=True)
        assert _run(resolve, "stale-account-after-cpi", reloaded) == []

    def test_instruction_sysvar(self, rs, resolve):
        unit = rs.unit(
            "src/lib.rs",
            rs.accounts_struct("Verify", rs.field("instructions", "AccountInfo<'info>", line=3, doc="/// CHECK: sysvar")),
            rs.handler(
                "verify", "Verify",
                rs.let("ix", rs.call("load_instruction_at", rs.lit("0"), rs.acc("instructions")), line=11),
                line=10,
            ),
        )
        assert len(_run(resolve, "deprecated-load-instruction-at", unit)) == 1
        assert len(_run(resolve, "unchecked-sysvar-account", unit)) == 1


# ── Account lifecycle ────────────────────────────────────────────────────────


class TestAccountRules:
    def test_init_if_needed(self, rs, resolve):
        def unit(*stmts):
            return rs.unit(
                "src/lib.rs",
                rs.accounts_struct(
                    "Init",
                    rs.field("counter", "Account<'info, Counter>",
                             rs.account(rs.flag("init_if_needed"), rs.kv("payer", rs.path("payer"))), line=3),
                    rs.field("payer", "Signer<'info>", rs.account(rs.flag("mut")), line=5),
                ),
                rs.handler("init", "Init", *stmts, line=10),
            )

        assert len(_run(resolve, "init-if-needed-reinit-cwe-665", unit())) == 1
        guard = rs.stmt(rs.macro("require", node("unary", "!", rs.fa(rs.acc("counter"), "is_initialized"))), line=11)
        assert _run(resolve, "init-if-needed-reinit-cwe-665", unit(guard)) == []

    def test_insecure_close(self, rs, resolve):
        def unit(clear):
            stmts = [
                _next_account(rs, "source", 2),
                _next_account(rs, "dest", 3),
                rs.stmt(rs.assign("+=", _lamports(rs, "dest"), rs.mcall(rs.path("source"), "lamports"), line=4), line=4),
                rs.stmt(rs.assign("=", _lamports(rs, "source"), rs.lit("0"), line=5), line=5),
            ]
            if clear:
                data = rs.mcall(rs.fa(rs.path("source"), "data"), "borrow_mut")
                stmts.append(rs.stmt(rs.mcall(data, "fill", rs.lit("0"), line=6), line=6))
            return rs.unit("src/processor.rs", rs.fn("close", _NATIVE_PARAMS, *stmts, line=1))

        [finding] = _run(resolve, "insecure-account-close-cwe-459", unit(False))
        assert finding.location.start_line == 5
        assert _run(resolve, "insecure-account-close-cwe-459", unit(True)) == []

    def test_duplicate_mutable_accounts(self, rs, resolve):
        def unit(*constraint):
            return rs.unit(
                "src/lib.rs",
                rs.accounts_struct(
                    "Swap",
                    rs.field("source_token", "Account<'info, TokenAccount>",
                             rs.account(rs.flag("mut"), *constraint), line=3),
                    rs.field("dest_token", "Account<'info, TokenAccount>", rs.account(rs.flag("mut")), line=5),
                ),
            )

        [finding] = _run(resolve, "duplicate-mutable-accounts-cwe-694", unit())
        assert finding.location.start_line == 5
        assert finding.related_locations[0].start_line == 3
        distinct = rs.kv("constraint", rs.binary(
            "!=", rs.mcall(rs.path("source_token"), "key"), rs.mcall(rs.path("dest_token"), "key"),
        ))
        assert _run(resolve, "duplicate-mutable-accounts-cwe-694", unit(distinct)) == []

    def test_type_cosplay(self, rs, resolve):
        def unit(*fields):
            data = rs.ref(rs.mcall(rs.fa(rs.path("account"), "data"), "borrow"))
            return rs.unit(
                "src/processor.rs",
                rs.state_struct("User", ("authority", "Pubkey"), *fields, borsh=True, line=40),
                rs.state_struct("Admin", ("authority", "Pubkey"), borsh=True, line=50),
                rs.fn(
                    "process", _NATIVE_PARAMS,
                    _next_account(rs, "account", 2),
                    rs.let("user", node("try", "", rs.call("User::try_from_slice", data, line=3)), line=3),
                    line=1,
                ),
            )

        [finding] = _run(resolve, "type-cosplay-cwe-843", unit())
        assert finding.severity is Severity.HIGH
        assert finding.location.start_line == 3
        assert _run(resolve, "type-cosplay-cwe-843", unit(("discriminator", "u8"))) == []

    def test_missing_mut(self, rs, resolve):
        def unit(*vault_attrs):
            return rs.unit(
                "src/lib.rs",
                rs.accounts_struct("Update", rs.field("vault", "Account<'info, Vault>", *vault_attrs, line=3)),
                rs.handler(
                    "update", "Update",
                    rs.stmt(rs.assign("=", rs.fa(rs.acc("vault"), "amount"), rs.lit("0"), line=11), line=11),
                    line=10,
                ),
            )

        [finding] = _run(resolve, "missing-mut-constraint", unit())
        assert "is written" in finding.message
        assert _run(resolve, "missing-mut-constraint", unit(rs.account(rs.flag("mut")))) == []

    def test_realloc_without_zero(self, rs, resolve):
        unit = rs.unit(
            "src/lib.rs",
            rs.accounts_struct(
                "Grow",
                rs.field("data", "Account<'info, Data>",
                         rs.account(rs.flag("mut"), rs.kv("realloc", rs.path("new_len")),
                                    rs.kv("realloc::payer", rs.path("payer")),
                                    rs.kv("realloc::zero", rs.lit("false"))),
                         line=3),
            ),
        )
        [finding] = _run(resolve, "realloc-without-zero", unit)
        assert "new_len" in finding.message


# ── Arithmetic and general ───────────────────────────────────────────────────


class TestArithmeticRules:
    def _withdraw(self, rs, guarded):
        stmts = []
        if guarded:
            stmts.append(rs.stmt(rs.macro(
                "require", rs.binary(">=", rs.fa(rs.acc("vault"), "amount"), rs.path("amount")), line=11,
            ), line=11))
        stmts.append(rs.stmt(rs.assign("-=", rs.fa(rs.acc("vault"), "amount"), rs.path("amount"), line=12), line=12))
        return rs.unit(
            "src/lib.rs",
            rs.accounts_struct("W", rs.field("vault", "Account<'info, Vault>", rs.account(rs.flag("mut")), line=3)),
            rs.handler("withdraw", "W", *stmts, line=10),
        )

    def test_unchecked_subtraction(self, rs, resolve):
        [finding] = _run(resolve, "unchecked-arithmetic-cwe-190", self._withdraw(rs, guarded=False))
        assert finding.location.start_line == 12

    def test_guard_clears_subtraction(self, rs, resolve):
        assert _run(resolve, "unchecked-arithmetic-cwe-190", self._withdraw(rs, guarded=True)) == []

    def _math(self, rs, *stmts):
        return rs.unit("src/math.rs", rs.fn("math", [("a", "u128"), ("b", "u64")], *stmts, line=1))

    def test_division_before_multiplication(self, rs, resolve):
        unit = self._math(rs, rs.stmt(rs.binary(
            "*", rs.binary("/", rs.path("a"), rs.path("b")), rs.path("c"), line=2,
        ), line=2))
        assert len(_run(resolve, "division-before-multiplication", unit)) == 1

    def test_lossy_cast(self, rs, resolve):
        unit = self._math(
            rs,
            rs.let("x", node("cast", "u32", rs.path("a"), line=2), line=2),
            rs.let("y", node("cast", "u64", rs.path("b"), line=3), line=3),
            rs.let("z", node("cast", "u64", rs.binary("*", rs.path("a"), rs.path("b")), line=4), line=4),
        )
        lines = sorted(f.location.start_line for f in _run(resolve, "lossy-cast", unit))
        assert lines == [2, 4]


class TestGeneralRules:
    def test_unwrap(self, rs, resolve):
        unit = rs.unit("src/lib.rs", rs.fn("f", [], rs.stmt(rs.mcall(rs.path("x"), "unwrap", line=2), line=2), line=1))
        [finding] = _run(resolve, "unsafe-unwrap", unit)
        assert finding.severity is Severity.LOW

    def test_unknown_constraint(self, rs, resolve):
        unit = rs.unit(
            "src/lib.rs",
            rs.accounts_struct("S", rs.field("a", "Account<'info, A>", rs.account(rs.flag("frobnicate")), line=3)),
        )
        [finding] = _run(resolve, "unknown-constraint-syntax", unit)
        assert finding.metadata == {"unknown": ("frobnicate",)}
