"""Built-in rule catalog.

Every module-level ``Rule`` in this package is discovered by
``RuleRegistry.discover``:

    pda             pda-sharing-cwe-345, non-canonical-bump-cwe-330, static-pda-seeds
    access_control  missing-signer-check-cwe-862, missing-owner-check-cwe-284,
                    unchecked-account-doc, missing-has-one-cwe-639
    cpi             unchecked-external-call-cwe-20, arbitrary-cpi-cwe-829,
                    stale-account-after-cpi, deprecated-load-instruction-at,
                    unchecked-sysvar-account
    accounts        init-if-needed-reinit-cwe-665, insecure-account-close-cwe-459,
                    duplicate-mutable-accounts-cwe-694, type-cosplay-cwe-843,
                    missing-mut-constraint, realloc-without-zero
    arithmetic      unchecked-arithmetic-cwe-190, division-before-multiplication, lossy-cast
    general         unsafe-unwrap, unknown-constraint-syntax
"""
