"""
Offline walkthrough of the constant-product pool: two providers deposit,
traders swap both ways, then the first provider withdraws half.
"""

from __future__ import annotations

from liquidity_pool.simulator import PoolSimulator


def _print_state(label: str, sim: PoolSimulator):
    snap = sim.snapshot()
    print(
        f"[Demo] {label}: reserves={snap.reserve_a}/{snap.reserve_b} k={snap.k} "
        f"shares={snap.total_shares} price_a_in_b={snap.price_a_in_b:.4f} "
        f"price_b_in_a={snap.price_b_in_a:.4f}"
    )


def run_demo() -> PoolSimulator:
    sim = PoolSimulator()

    minted = sim.add_liquidity("seed", 1000, 1000)
    print(f"[Demo] Seed deposit 1000/1000 minted {minted} shares")
    _print_state("Initial pool", sim)

    minted = sim.add_liquidity("provider1", 100, 100)
    print(f"[Demo] Provider 1 deposited 100/100, received {minted} shares")
    minted = sim.add_liquidity("provider2", 200, 200)
    print(f"[Demo] Provider 2 deposited 200/200, received {minted} shares")
    _print_state("After deposits", sim)

    out = sim.swap_a_for_b(50)
    print(f"[Demo] Swapped 50 A for {out} B")
    _print_state("After A->B swap", sim)

    out = sim.swap_b_for_a(75)
    print(f"[Demo] Swapped 75 B for {out} A")
    _print_state("After B->A swap", sim)

    half = sim.shares_of("provider1") // 2
    amount_a, amount_b = sim.remove_liquidity("provider1", half)
    print(f"[Demo] Provider 1 burned {half} shares for {amount_a} A / {amount_b} B")
    _print_state("Final pool", sim)
    return sim


if __name__ == "__main__":
    run_demo()
