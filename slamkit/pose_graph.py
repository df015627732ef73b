"""Pose-graph optimisation over SE(3), with poses updated in the Lie algebra."""

from __future__ import annotations

import argparse
import itertools
from dataclasses import dataclass, field
from typing import IO, Iterator

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve

from slamkit.lie import SE3

VERTEX_TAG = "VERTEX_SE3:QUAT"
EDGE_TAG = "EDGE_SE3:QUAT"

_UPPER = np.triu_indices(6)
_BLOCK = np.arange(6)


def jr_inv(error) -> np.ndarray:
    """Approximate inverse right Jacobian of SE(3) at ``error``.

    Only the zeroth-order term, the identity, is kept.
    """
    if not isinstance(error, SE3):
        arr = np.asarray(error, dtype=float)
        if arr.shape != (6,):
            raise ValueError(f"error must be an SE3 or a 6-vector, got shape {arr.shape}")
    return np.eye(6)


def _format(value) -> str:
    return repr(float(value))


def _pose_fields(pose: SE3) -> list[str]:
    w, x, y, z = pose.rotation.quaternion()
    return [_format(v) for v in (*pose.translation, x, y, z, w)]


def _pose_from_fields(values: list[float]) -> SE3:
    tx, ty, tz, qx, qy, qz, qw = values
    return SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz))


def _take_floats(tokens: Iterator[str], count: int, what: str) -> list[float]:
    values = list(itertools.islice(tokens, count))
    if len(values) != count:
        raise ValueError(f"truncated {what} record")
    try:
        return [float(v) for v in values]
    except ValueError as exc:
        raise ValueError(f"malformed number in {what} record") from exc


def _take_int(tokens: Iterator[str], what: str) -> int:
    token = next(tokens, None)
    if token is None:
        raise ValueError(f"truncated {what} record")
    try:
        return int(token)
    except ValueError as exc:
        raise ValueError(f"malformed vertex id {token!r} in {what} record") from exc


@dataclass
class Vertex:
    """A pose in the graph; a fixed vertex is never moved by the optimiser."""

    id: int
    estimate: SE3 = field(default_factory=SE3)
    fixed: bool = False


@dataclass(eq=False)
class Edge:
    """A relative-pose measurement from vertex ``first`` to vertex ``second``."""

    first: int
    second: int
    measurement: SE3 = field(default_factory=SE3)
    information: np.ndarray = field(default_factory=lambda: np.eye(6))
    id: int | None = None

    def __post_init__(self) -> None:
        info = np.array(self.information, dtype=float)
        if info.shape != (6, 6):
            raise ValueError(f"information must be 6x6, got shape {info.shape}")
        self.information = info

    def error(self, graph: "PoseGraph") -> np.ndarray:
        """log(Z^-1 T1^-1 T2) for the current estimates of the two vertices."""
        v1 = graph.vertices[self.first].estimate
        v2 = graph.vertices[self.second].estimate
        return (self.measurement.inverse() * v1.inverse() * v2).log()

    def _jacobians(self, graph: "PoseGraph", error: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        j = jr_inv(SE3.exp(error))
        adj = graph.vertices[self.second].estimate.inverse().adjoint()
        return -j @ adj, j @ adj


class PoseGraph:
    """Vertices keyed by id and the edges between them."""

    def __init__(self) -> None:
        self.vertices: dict[int, Vertex] = {}
        self.edges: list[Edge] = []

    def add_vertex(self, vertex: Vertex) -> None:
        if vertex.id in self.vertices:
            raise ValueError(f"vertex {vertex.id} already in the graph")
        self.vertices[vertex.id] = vertex

    def add_edge(self, edge: Edge) -> None:
        for vid in (edge.first, edge.second):
            if vid not in self.vertices:
                raise ValueError(f"edge refers to unknown vertex {vid}")
        if edge.id is None:
            edge.id = len(self.edges)
        self.edges.append(edge)

    @classmethod
    def read(cls, stream: IO[str]) -> "PoseGraph":
        """Read VERTEX_SE3:QUAT and EDGE_SE3:QUAT records; other tokens are skipped.

        Vertex 0 is held fixed.
        """
        graph = cls()
        tokens = iter(stream.read().split())
        for name in tokens:
            if name == VERTEX_TAG:
                index = _take_int(tokens, "vertex")
                pose = _pose_from_fields(_take_floats(tokens, 7, "vertex"))
                graph.add_vertex(Vertex(index, pose, fixed=index == 0))
            elif name == EDGE_TAG:
                first = _take_int(tokens, "edge")
                second = _take_int(tokens, "edge")
                measurement = _pose_from_fields(_take_floats(tokens, 7, "edge"))
                upper = np.zeros((6, 6))
                upper[_UPPER] = _take_floats(tokens, 21, "edge")
                information = upper + upper.T - np.diag(np.diag(upper))
                graph.add_edge(Edge(first, second, measurement, information))
        return graph

    def write(self, stream: IO[str]) -> None:
        """Write the graph in the format that ``read`` accepts."""
        for vertex in self.vertices.values():
            fields = [VERTEX_TAG, str(vertex.id), *_pose_fields(vertex.estimate)]
            stream.write(" ".join(fields) + "\n")
        for edge in self.edges:
            info = [_format(v) for v in edge.information[_UPPER]]
            fields = [EDGE_TAG, str(edge.first), str(edge.second), *_pose_fields(edge.measurement), *info]
            stream.write(" ".join(fields) + "\n")

    def total_error(self) -> float:
        """Sum over edges of e^T Omega e."""
        total = 0.0
        for edge in self.edges:
            e = edge.error(self)
            total += float(e @ edge.information @ e)
        return total

    def _linearize(self, index: dict[int, int], size: int):
        rows, cols, vals = [], [], []
        gradient = np.zeros(size)
        for edge in self.edges:
            e = edge.error(self)
            ji, jj = edge._jacobians(self, e)
            omega = edge.information
            blocks = [(index.get(edge.first), ji), (index.get(edge.second), jj)]
            for ka, ja in blocks:
                if ka is None:
                    continue
                ra = 6 * ka + _BLOCK
                gradient[ra] += ja.T @ omega @ e
                for kb, jb in blocks:
                    if kb is None:
                        continue
                    rb = 6 * kb + _BLOCK
                    block = ja.T @ omega @ jb
                    rows.append(np.repeat(ra, 6))
                    cols.append(np.tile(rb, 6))
                    vals.append(block.ravel())
        if rows:
            hessian = sparse.coo_matrix(
                (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                shape=(size, size),
            ).tocsc()
        else:
            hessian = sparse.csc_matrix((size, size))
        return hessian, gradient

    def _apply(self, dx: np.ndarray, index: dict[int, int]) -> None:
        for vid, k in index.items():
            vertex = self.vertices[vid]
            vertex.estimate = SE3.exp(dx[6 * k: 6 * k + 6]) * vertex.estimate

    def optimize(self, iterations: int = 30) -> list[float]:
        """Levenberg-Marquardt over the free vertices; returns the error after each step."""
        index = {vid: k for k, vid in enumerate(v.id for v in self.vertices.values() if not v.fixed)}
        size = 6 * len(index)
        history: list[float] = []
        if size == 0 or not self.edges:
            return history

        chi2 = self.total_error()
        lam = None
        nu = 2.0
        for _ in range(iterations):
            hessian, gradient = self._linearize(index, size)
            if lam is None:
                diag_max = float(hessian.diagonal().max())
                lam = 1e-5 * (diag_max if diag_max > 0 else 1.0)
            accepted = False
            for _attempt in range(10):
                damped = (hessian + lam * sparse.identity(size, format="csc")).tocsc()
                dx = np.atleast_1d(spsolve(damped, -gradient))
                if not np.all(np.isfinite(dx)):
                    lam *= nu
                    nu *= 2
                    continue
                backup = {vid: self.vertices[vid].estimate for vid in index}
                self._apply(dx, index)
                new_chi2 = self.total_error()
                if np.isfinite(new_chi2) and new_chi2 < chi2:
                    predicted = float(dx @ (lam * dx - gradient))
                    rho = (chi2 - new_chi2) / predicted if predicted > 0 else 1.0
                    lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                    nu = 2.0
                    chi2 = new_chi2
                    accepted = True
                    break
                for vid, estimate in backup.items():
                    self.vertices[vid].estimate = estimate
                lam *= nu
                nu *= 2
            if not accepted:
                break
            history.append(chi2)
        return history


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="pose_graph", description="Optimise a pose graph in g2o format.")
    parser.add_argument("graph", help="input graph, e.g. sphere.g2o")
    parser.add_argument("--output", default="result.g2o")
    parser.add_argument("--iterations", type=int, default=30)
    args = parser.parse_args(argv)

    try:
        with open(args.graph, encoding="utf-8") as fin:
            graph = PoseGraph.read(fin)
    except FileNotFoundError:
        print(f"file {args.graph} does not exist.")
        return 1

    print(f"read total {len(graph.vertices)} vertices, {len(graph.edges)} edges.")
    print("optimizing ...")
    for step, chi2 in enumerate(graph.optimize(args.iterations)):
        print(f"iteration= {step}\t chi2= {chi2}")
    print("saving optimization results ...")
    with open(args.output, "w", encoding="utf-8") as fout:
        graph.write(fout)
    return 0