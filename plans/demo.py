"""
Demo plan: data -> model -> report.
演示计划：数据准备 -> 模型拟合 -> 生成报告。

    python main.py plans/demo.py -j 2

`data` and `model` run on workers; `report` is marked hpc=False and runs in
the orchestrator process once `model` is built. Commands are module-level
functions so the process backend can pickle them.
`data` 与 `model` 在 worker 上运行；`report` 标记为 hpc=False，在 `model` 完成后于编排进程内运行。
"""

from __future__ import annotations

from schema import Target


def load_data(deps):
    """Synthetic observations: y = 2x + 1 with a little noise."""
    xs = list(range(20))
    ys = [2 * x + 1 + (0.5 if x % 2 else -0.5) for x in xs]
    return {"x": xs, "y": ys}


def fit_model(deps):
    """Ordinary least squares on the data artifact."""
    data = deps["data"]
    xs, ys = data["x"], data["y"]
    n = len(xs)
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    cov = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    var = sum((x - mean_x) ** 2 for x in xs)
    slope = cov / var
    return {"slope": slope, "intercept": mean_y - slope * mean_x, "n": n}


def write_report(deps):
    model = deps["model"]
    return (
        f"Fitted y = {model['slope']:.3f} * x + {model['intercept']:.3f} "
        f"on {model['n']} points"
    )


def get_plan() -> list[Target]:
    return [
        Target(name="data", command=load_data),
        Target(name="model", command=fit_model, deps=["data"], resources={"cores": 2}),
        Target(name="report", command=write_report, deps=["model"], hpc=False),
    ]
