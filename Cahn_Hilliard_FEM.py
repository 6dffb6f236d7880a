#%% # Key Libraries
import abc
import logging
import warnings
from math import factorial

import matplotlib.pyplot as plt
import matplotlib.tri as tri
import meshpy.triangle as mp
import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

# Set up logging
logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

#%% # Errors

class DegenerateElementError(ValueError):
    """Raised for a triangle with zero or negative area."""


class LinearSolveError(RuntimeError):
    """Raised when the reduced Newton system cannot be solved."""

#%% # Domain Class
class Domain:
    def __init__(self, vertices, edges):
        """
        Simple container for a 2D polygonal domain.

        Args:
            vertices    : NumPy array of shape (n, 2)
            edges       : NumPy array of shape (m, 2) with vertex indices

        """
        self.vertices = np.asarray(vertices, dtype=float)
        self.edges = np.asarray(edges, dtype=int)

    @classmethod
    def rectangle(cls, xmin=-1.0, xmax=1.0, ymin=-1.0, ymax=1.0):
        if xmax <= xmin or ymax <= ymin:
            logging.error(f"Invalid rectangle bounds ({xmin}, {xmax}) x ({ymin}, {ymax}).")
            raise ValueError("Rectangle bounds must satisfy xmin < xmax and ymin < ymax.")

        vertices = np.array([[xmin, ymin],
                             [xmax, ymin],
                             [xmax, ymax],
                             [xmin, ymax]])
        edges = np.array([[0, 1], [1, 2], [2, 3], [3, 0]])
        return cls(vertices, edges)

    @property
    def bounds(self):
        """(xmin, xmax, ymin, ymax) of the bounding box."""
        xmin, ymin = self.vertices.min(axis=0)
        xmax, ymax = self.vertices.max(axis=0)
        return xmin, xmax, ymin, ymax

#%% # Solver Parameters

class SolverParams:
    """
    Simple container for the Newton-Raphson configuration.
    """

    def __init__(self, max_its=50, epsilon=0.1, tol=1e-10):
        """
        Args:
            max_its     : int, maximum number of stored Newton iterates (including iterate 0).
            epsilon     : float, interface-width parameter, must be > 0.
            tol         : float, tolerance on the Euclidean norm of the Newton correction.

        """
        self.max_its = max_its
        self.epsilon = epsilon
        self.tol = tol

    def validate(self):
        if not isinstance(self.max_its, (int, np.integer)) or self.max_its < 1:
            logging.error(f"Invalid max_its: {self.max_its}. Must be an integer >= 1.")
            raise ValueError(f"max_its must be an integer >= 1, got {self.max_its}.")

        if not self.epsilon > 0:
            logging.error(f"Invalid epsilon: {self.epsilon}. Must be > 0.")
            raise ValueError(f"epsilon must be > 0, got {self.epsilon}.")

        if not self.tol > 0:
            logging.error(f"Invalid tol: {self.tol}. Must be > 0.")
            raise ValueError(f"tol must be > 0, got {self.tol}.")

        return self

#%% # Mesh Container

def signed_areas(nodes, elements):
    """
    Signed area of every triangle; positive for counter-clockwise vertex order.
    """
    p0 = nodes[elements[:, 0]]
    p1 = nodes[elements[:, 1]]
    p2 = nodes[elements[:, 2]]
    return 0.5 * ((p1[:, 0] - p0[:, 0]) * (p2[:, 1] - p0[:, 1])
                  - (p2[:, 0] - p0[:, 0]) * (p1[:, 1] - p0[:, 1]))


class Mesh:
    """
    Node coordinates, triangle connectivity and characteristic element size.

    Node ids are the 0-based row indices of `nodes` and stay fixed for the whole run.
    """

    def __init__(self, nodes, elements, h0):
        nodes = np.asarray(nodes, dtype=float)
        elements = np.asarray(elements, dtype=int)

        if nodes.ndim != 2 or nodes.shape[1] != 2:
            logging.error(f"Node array has shape {nodes.shape}, expected (N, 2).")
            raise ValueError("Node array must have shape (N, 2).")

        if elements.ndim != 2 or elements.shape[1] != 3:
            logging.error(f"Element array has shape {elements.shape}, expected (M, 3).")
            raise ValueError("Element array must have shape (M, 3).")

        if elements.size and (elements.min() < 0 or elements.max() >= nodes.shape[0]):
            logging.error("Connectivity references a node id outside the coordinate table.")
            raise ValueError(f"Node ids must lie in [0, {nodes.shape[0] - 1}].")

        if not h0 > 0:
            logging.error(f"Invalid characteristic length h0 = {h0}.")
            raise ValueError(f"Characteristic length must be > 0, got {h0}.")

        areas = signed_areas(nodes, elements)
        bad = np.flatnonzero(areas <= 0.0)
        if bad.size:
            logging.error(f"{bad.size} degenerate or clockwise triangles, first is element {bad[0]}.")
            raise DegenerateElementError(f"Element {bad[0]} has non-positive area {areas[bad[0]]:.3e}.")

        self.nodes = nodes
        self.elements = elements
        self.h0 = float(h0)

    @property
    def num_nodes(self):
        return self.nodes.shape[0]

    @property
    def num_elements(self):
        return self.elements.shape[0]

#%% # Base Mesh Class

class BaseMesh(abc.ABC):
    """
    Abstract base class for rectangle mesh providers.

    Each mesh class should implement:
      - generate_mesh()
    """

    def __init__(self, domain):

        self.domain = domain
        self.mesh = None

    @abc.abstractmethod
    def generate_mesh(self):
        """
        Generate a mesh, storing it as self.mesh and returning it.
        """
        pass

    def _finalise(self, nodes, elements, h0):
        # Flip clockwise triangles so every element has positive area.
        elements = np.array(elements, dtype=int)
        clockwise = signed_areas(nodes, elements) < 0
        elements[clockwise] = elements[clockwise][:, [0, 2, 1]]

        self.mesh = Mesh(nodes, elements, h0)
        return self.mesh

#%% # Triangular Mesh Class

class TriMesh(BaseMesh):
    """
    Unstructured triangular mesh implementation using meshpy.triangle.
    """

    def __init__(self, domain, max_volume):

        super().__init__(domain)
        self.max_volume = max_volume

    def generate_mesh(self):
        """
        Build a triangular mesh using meshpy.triangle.

        The characteristic length is the leg of a right isosceles triangle of area max_volume.
        """

        if self.max_volume is None or not self.max_volume > 0:
            logging.error(f"Invalid max_volume for TriMesh: {self.max_volume}.")
            raise ValueError("max_volume must be > 0 for a triangular mesh.")

        mesh_info = mp.MeshInfo()
        mesh_info.set_points(self.domain.vertices.tolist())
        mesh_info.set_facets(self.domain.edges.tolist())

        try:
            built = mp.build(mesh_info, max_volume=self.max_volume)

        except Exception as e:
            logging.error(f"Mesh generation failed for TriMesh: {e}")
            raise

        nodes = np.array(built.points, dtype=float)
        elements = np.array(built.elements, dtype=int)

        return self._finalise(nodes, elements, np.sqrt(2.0 * self.max_volume))

#%% # Structured Triangular Mesh Class

class StructuredTriMesh(BaseMesh):
    """
    Structured mesh of the domain's bounding rectangle: Nx by Ny cells,
    each cell split into two triangles along its diagonal.
    """

    def __init__(self, domain, Nx, Ny):

        super().__init__(domain)
        self.Nx = Nx
        self.Ny = Ny

    def generate_mesh(self):

        if self.Nx is None or self.Ny is None or self.Nx < 1 or self.Ny < 1:
            logging.error(f"Invalid subdivision Nx={self.Nx}, Ny={self.Ny}.")
            raise ValueError("Nx and Ny must be integers >= 1.")

        xmin, xmax, ymin, ymax = self.domain.bounds
        x = np.linspace(xmin, xmax, self.Nx + 1)
        y = np.linspace(ymin, ymax, self.Ny + 1)
        X, Y = np.meshgrid(x, y)
        nodes = np.column_stack([X.ravel(), Y.ravel()])

        # Node id of grid point (i, j) is j*(Nx + 1) + i
        i, j = np.meshgrid(np.arange(self.Nx), np.arange(self.Ny))
        n0 = (j * (self.Nx + 1) + i).ravel()
        n1 = n0 + 1
        n2 = n0 + self.Nx + 1
        n3 = n2 + 1

        lower = np.column_stack([n0, n1, n3])
        upper = np.column_stack([n0, n3, n2])
        elements = np.vstack([lower, upper])

        h0 = max((xmax - xmin) / self.Nx, (ymax - ymin) / self.Ny)

        return self._finalise(nodes, elements, h0)

#%% # Boundary Classification

def rectangle_sides(mesh, bounds):
    """
    Boolean masks of the nodes on each side of the rectangle, within h0/100.
    """
    xmin, xmax, ymin, ymax = bounds
    tol = mesh.h0 / 100
    x, y = mesh.nodes[:, 0], mesh.nodes[:, 1]

    return {
        'left'      : x < xmin + tol,
        'right'     : x > xmax - tol,
        'bottom'    : y < ymin + tol,
        'top'       : y > ymax - tol,
    }


def classify_rectangle_boundary(mesh, bounds):
    """
    Partition the node ids into (boundary, interior) for a rectangular domain.
    """
    on_boundary = np.zeros(mesh.num_nodes, dtype=bool)
    for mask in rectangle_sides(mesh, bounds).values():
        on_boundary |= mask

    all_nodes = np.arange(mesh.num_nodes)
    return all_nodes[on_boundary], all_nodes[~on_boundary]


def free_boundary(mesh):
    """
    Empty boundary set: every node is a degree of freedom.
    """
    return np.array([], dtype=int), np.arange(mesh.num_nodes)


def check_partition(num_nodes, boundary, interior):

    boundary = np.asarray(boundary, dtype=int).ravel()
    interior = np.asarray(interior, dtype=int).ravel()

    if np.intersect1d(boundary, interior).size:
        logging.error("Boundary and interior node sets overlap.")
        raise ValueError("Boundary and interior node sets must be disjoint.")

    combined = np.concatenate([boundary, interior])
    if combined.size != num_nodes or not np.array_equal(np.sort(combined), np.arange(num_nodes)):
        logging.error("Boundary and interior node sets do not cover every node exactly once.")
        raise ValueError("Boundary and interior node sets must partition all node ids.")

    return boundary, interior

#%% # Initial Conditions

def smooth_initial_condition(points):
    return np.cos(2 * np.pi * points[:, 0]) * np.cos(np.pi * points[:, 1])


def random_initial_condition(points, seed=10):
    """Uniform values in [-1, 1), reproducible through the seed."""
    rng = np.random.default_rng(seed)
    return 2 * rng.random(points.shape[0]) - 1


def discontinuous_initial_condition(points):
    return np.sign(points[:, 1])


INITIAL_CONDITIONS = {
    'smooth'        : smooth_initial_condition,
    'random'        : random_initial_condition,
    'discontinuous' : discontinuous_initial_condition,
}

#%% # Local Element Assembly

def shape_funcs(xi, eta):
    """
    Return shape functions (N) and their local derivatives (dN) for a linear triangular element.
    """
    N = np.array([xi, eta, 1 - xi - eta])

    dN = np.array([[1,  0],
                   [0,  1],
                   [-1, -1]])
    return N, dN


def _quartic_moments():
    """
    Q[a, b, c, d] = (1/area) * integral over a triangle of phi_a phi_b phi_c phi_d.

    Uses the barycentric monomial formula
        integral of L1^i L2^j L3^k = 2 * area * i! j! k! / (i + j + k + 2)!
    """
    Q = np.zeros((3, 3, 3, 3))
    for idx in np.ndindex(3, 3, 3, 3):
        powers = np.bincount(idx, minlength=3)
        Q[idx] = 2.0 * np.prod([factorial(k) for k in powers]) / factorial(6)
    return Q


# Shared by every element; scaled by the element area at assembly time.
QUARTIC_MOMENTS = _quartic_moments()
REFERENCE_MASS = (np.ones((3, 3)) + np.eye(3)) / 12


def element_geometry(coords):
    """
    Area and physical shape function gradients of a linear triangle.

    Args:
        coords      : (3, 2) array of vertex coordinates, counter-clockwise.

    Returns:
        area        : float
        dN_global   : (3, 2) array, row a is grad(phi_a).
    """
    coords = np.asarray(coords, dtype=float)
    _, dN = shape_funcs(1/3, 1/3) # dN is constant on a linear triangle

    # Jacobian of the map from the reference triangle
    J = dN.T @ coords
    detJ = np.linalg.det(J)

    # Relative to the longest edge so the test does not depend on the domain size
    edges = coords - np.roll(coords, 1, axis=0)
    max_edge_sq = (edges**2).sum(axis=1).max()
    if detJ <= 1e-14 * max_edge_sq:
        logging.error(f"Degenerate element with vertices {coords.tolist()}, detJ = {detJ:.3e}.")
        raise DegenerateElementError(f"Element has non-positive area (detJ = {detJ:.3e}).")

    dN_global = np.linalg.solve(J, dN.T).T

    return 0.5 * detJ, dN_global


def local_stiffness(area, dN_global):
    return area * (dN_global @ dN_global.T)


def local_mass(area):
    return area * REFERENCE_MASS


def assemble_local(coords, u_local, epsilon):
    """
    Local Newton tangent and residual of the steady Cahn-Hilliard weak form

        integral of  epsilon grad(u).grad(phi_d) + (u^3 - u) phi_d  = 0

    with u interpolated linearly from u_local. The cubic term is integrated exactly.

    Args:
        coords      : (3, 2) vertex coordinates.
        u_local     : (3,) current nodal values.
        epsilon     : float, interface-width parameter.

    Returns:
        J_local     : (3, 3) tangent matrix.
        f_local     : (3,) residual vector.
    """
    if not epsilon > 0:
        logging.error(f"Invalid epsilon passed to assemble_local: {epsilon}.")
        raise ValueError(f"epsilon must be > 0, got {epsilon}.")

    u = np.asarray(u_local, dtype=float)
    area, dN_global = element_geometry(coords)

    K = local_stiffness(area, dN_global)
    M = local_mass(area)

    cubic = area * np.einsum('abcd,a,b,c->d', QUARTIC_MOMENTS, u, u, u)
    d_cubic = 3 * area * np.einsum('abed,a,b->de', QUARTIC_MOMENTS, u, u)

    f_local = epsilon * (K @ u) - M @ u + cubic
    J_local = epsilon * K - M + d_cubic

    return J_local, f_local

#%% # Global Assembly

def local_contributions(mesh, u, epsilon):
    """
    Lazily yield (node ids, J_local, f_local) for every triangle of the mesh.
    """
    for nodes_idx in mesh.elements:
        J_e, f_e = assemble_local(mesh.nodes[nodes_idx], u[nodes_idx], epsilon)
        yield nodes_idx, J_e, f_e


def assemble_global(mesh, u, epsilon):
    """
    Assemble the global Jacobian in sparse COO format, convert to CSR, and the global residual.

    Contributions of triangles sharing a node add up; nothing is overwritten.
    """
    u = np.asarray(u, dtype=float)
    if u.shape != (mesh.num_nodes,):
        logging.error(f"Iterate has shape {u.shape}, expected ({mesh.num_nodes},).")
        raise ValueError("Iterate length must equal the number of mesh nodes.")

    num_entries = mesh.num_elements * 9

    # Preallocate arrays to hold row indices, column indices and Jacobian values.
    rows = np.empty(num_entries, dtype=int)
    cols = np.empty(num_entries, dtype=int)
    data = np.empty(num_entries)
    f = np.zeros(mesh.num_nodes)

    entry = 0
    for nodes_idx, J_e, f_e in local_contributions(mesh, u, epsilon):
        rows[entry:entry + 9] = np.repeat(nodes_idx, 3)
        cols[entry:entry + 9] = np.tile(nodes_idx, 3)
        data[entry:entry + 9] = J_e.ravel()
        np.add.at(f, nodes_idx, f_e)
        entry += 9

    # Duplicate (row, col) pairs are summed by the CSR conversion.
    J_coo = sp.coo_matrix((data, (rows, cols)), shape=(mesh.num_nodes, mesh.num_nodes))

    return J_coo.tocsr(), f

#%% # Newton-Raphson Solver

class NewtonResult:
    """
    Outcome of a Newton-Raphson run.

    Attributes:
        status      : 'converged', 'exhausted' or 'linear_solve_failed'
        step        : index of the last computed iterate
        iterates    : (N, step + 1) array, column k is iterate k
        norms       : correction norm of every completed step
        reason      : failure message for 'linear_solve_failed', else None
    """

    CONVERGED = 'converged'
    EXHAUSTED = 'exhausted'
    LINEAR_SOLVE_FAILED = 'linear_solve_failed'

    def __init__(self, status, step, iterates, norms, reason=None):
        self.status = status
        self.step = step
        self.iterates = iterates
        self.norms = np.asarray(norms, dtype=float)
        self.reason = reason

    @property
    def converged(self):
        return self.status == self.CONVERGED

    @property
    def solution(self):
        return self.iterates[:, self.step]

    def __repr__(self):
        return f"NewtonResult(status={self.status!r}, step={self.step})"


def solve_reduced(J, f, interior):
    """
    Solve J[interior, interior] W = f[interior].

    Raises LinearSolveError if the matrix is singular or the correction is not finite.
    """
    J_in = J[interior][:, interior].tocsc()
    f_in = f[interior]

    with warnings.catch_warnings():
        warnings.simplefilter("error", spla.MatrixRankWarning)
        try:
            W_in = spla.spsolve(J_in, f_in)

        except (RuntimeError, np.linalg.LinAlgError, spla.MatrixRankWarning) as e:
            logging.error(f"Error solving reduced Newton system: {e}")
            raise LinearSolveError(f"Reduced Jacobian is singular: {e}") from e

    W_in = np.atleast_1d(W_in)
    if not np.all(np.isfinite(W_in)):
        logging.error("Reduced Newton system produced a non-finite correction.")
        raise LinearSolveError("Reduced Jacobian is singular or ill-conditioned: non-finite correction.")

    return W_in


def newton_raphson(mesh, u0, boundary, interior, params):
    """
    Newton-Raphson iteration for the steady Cahn-Hilliard system.

    Boundary entries of iterate 0 are set to zero and are never corrected, so an empty
    boundary gives the boundary-free (natural Neumann) problem.
    """
    params.validate()
    boundary, interior = check_partition(mesh.num_nodes, boundary, interior)

    u0 = np.asarray(u0, dtype=float)
    if u0.shape != (mesh.num_nodes,):
        logging.error(f"Initial condition has shape {u0.shape}, expected ({mesh.num_nodes},).")
        raise ValueError("Initial condition length must equal the number of mesh nodes.")

    U = np.zeros((mesh.num_nodes, params.max_its))
    U[:, 0] = u0
    U[boundary, 0] = 0.0 # Dirichlet

    norms = []
    for n in range(params.max_its - 1):
        un = U[:, n]
        J, f = assemble_global(mesh, un, params.epsilon)

        W = np.zeros(mesh.num_nodes)
        if interior.size:
            try:
                W[interior] = solve_reduced(J, f, interior)

            except LinearSolveError as e:
                return NewtonResult(NewtonResult.LINEAR_SOLVE_FAILED, n, U[:, :n + 1], norms, reason=str(e))

        U[:, n + 1] = un - W

        norm_W = np.linalg.norm(W)
        norms.append(norm_W)
        logging.info(f"Newton step {n + 1}: |W| = {norm_W:.3e}")

        if norm_W < params.tol:
            logging.info(f"Newton-Raphson converged after {n + 1} iterations.")
            return NewtonResult(NewtonResult.CONVERGED, n + 1, U[:, :n + 2], norms)

    logging.warning(f"Newton-Raphson did not converge within {params.max_its} iterates.")
    return NewtonResult(NewtonResult.EXHAUSTED, params.max_its - 1, U, norms)

#%% # Cahn-Hilliard Class
class CahnHilliardFEM:
    """
    Steady-state Cahn-Hilliard solver on a rectangle using either TriMesh or StructuredTriMesh.
    Handles mesh generation, boundary conditions, initial condition, Newton solve and plotting.
    """
    def __init__(self, mesh_type):
        """
        Args:
            mesh_type : str, either 'triangular' or 'structured'
        """

        self.mesh_type = mesh_type

        # System properties
        self.domain = None
        self.params = None
        self.initial_condition = None
        self.seed = None
        self.dirichlet = None

        # Mesh properties
        self.mesh_obj = None
        self.mesh = None
        self.max_volume = None
        self.Nx = None
        self.Ny = None

        # Boundary partition
        self.boundary = None
        self.interior = None

        # Solution
        self.U0 = None
        self.result = None

    @property
    def num_nodes(self):
        return self.mesh.num_nodes

    @property
    def num_elements(self):
        return self.mesh.num_elements

    def _set_system_params(self, domain, params=None, init_vol=None, Nx=None, Ny=None,
                           initial_condition='smooth', seed=10, dirichlet=False):
        """
        Set up the domain, mesh parameters, solver parameters and initial condition.
        """

        self.domain = domain
        self.params = (params if params is not None else SolverParams()).validate()
        self.seed = seed
        self.dirichlet = dirichlet

        if callable(initial_condition):
            self.initial_condition = initial_condition

        elif initial_condition in INITIAL_CONDITIONS:
            self.initial_condition = INITIAL_CONDITIONS[initial_condition]

        else:
            logging.error(f"Initial condition {initial_condition} not recognised.")
            raise ValueError(f"Initial condition {initial_condition} not recognised.")

        self.max_volume = init_vol
        self.Nx = Nx
        self.Ny = Ny

        if self.mesh_type == 'triangular':
            if self.max_volume is None:
                logging.error("Max volume must be specified for triangular mesh.")
                raise ValueError("Max volume must be specified for triangular mesh.")

            self.mesh_obj = TriMesh(self.domain, max_volume=self.max_volume)

        elif self.mesh_type == 'structured':
            if Nx is None or Ny is None:
                logging.error("Nx, Ny must be specified for structured mesh.")
                raise ValueError("Nx, Ny must be specified for structured mesh.")

            self.mesh_obj = StructuredTriMesh(self.domain, Nx=self.Nx, Ny=self.Ny)

        else:
            logging.error(f"Mesh type {self.mesh_type} not recognised.")
            raise ValueError(f"Mesh type {self.mesh_type} not recognised.")

    def _generate_mesh(self):

        self.mesh = self.mesh_obj.generate_mesh()
        logging.info(f"Generated {self.mesh_type} mesh: {self.num_nodes} nodes, {self.num_elements} elements.")

    def _set_boundary_conditions(self):
        """
        Homogeneous Dirichlet on the rectangle sides, or a boundary-free problem.
        """

        if self.dirichlet:
            self.boundary, self.interior = classify_rectangle_boundary(self.mesh, self.domain.bounds)

        else:
            self.boundary, self.interior = free_boundary(self.mesh)

        logging.info(f"Boundary nodes: {self.boundary.size}, interior nodes: {self.interior.size}.")

    def _set_initial_condition(self):

        if self.initial_condition is random_initial_condition:
            self.U0 = random_initial_condition(self.mesh.nodes, seed=self.seed)

        else:
            self.U0 = np.asarray(self.initial_condition(self.mesh.nodes), dtype=float)

    def solve_system(self):
        """
        Run the Newton iteration. A singular reduced Jacobian aborts the run.
        """

        self.result = newton_raphson(self.mesh, self.U0, self.boundary, self.interior, self.params)

        if self.result.status == NewtonResult.LINEAR_SOLVE_FAILED:
            raise LinearSolveError(self.result.reason)

        return self.result

    def run_analysis(self):

        self._generate_mesh()
        self._set_boundary_conditions()
        self._set_initial_condition()

        return self.solve_system()

    def _triangulation(self):
        return tri.Triangulation(self.mesh.nodes[:, 0], self.mesh.nodes[:, 1], triangles=self.mesh.elements)

    def plot_boundary_nodes(self):

        sides = rectangle_sides(self.mesh, self.domain.bounds)
        on_boundary = np.zeros(self.num_nodes, dtype=bool)

        plt.figure()
        for name, mask in sides.items():
            plt.scatter(self.mesh.nodes[mask, 0], self.mesh.nodes[mask, 1], label=name.capitalize())
            on_boundary |= mask

        plt.scatter(self.mesh.nodes[~on_boundary, 0], self.mesh.nodes[~on_boundary, 1], label='Interior')
        plt.title('Boundary nodes')
        plt.legend()
        plt.show()

    def plot_solution(self, step=None):
        """
        Surface plot of a Newton iterate, the final one by default.
        """
        if step is None:
            step = self.result.step

        fig = plt.figure(figsize=(10, 10))
        ax = fig.add_subplot(projection='3d')
        ax.plot_trisurf(self._triangulation(), self.result.iterates[:, step], cmap='viridis')
        ax.set_axis_off()
        ax.set_title('Steady State: FEM with linear Lagrange basis')
        ax.set_zlabel('Concentration')
        plt.show()

    def plot_iterates(self, pause=0.2):
        """
        Show the evolution of the Newton iterates.
        """
        triang = self._triangulation()
        fig = plt.figure()
        ax = fig.add_subplot(projection='3d')

        for n in range(self.result.step + 1):
            ax.clear()
            ax.plot_trisurf(triang, self.result.iterates[:, n], cmap='viridis')
            ax.set_title(f'Newton iterate {n}')
            plt.pause(pause)

        plt.show()

    def plot_convergence(self):

        plt.figure()
        plt.semilogy(np.arange(1, self.result.norms.size + 1), self.result.norms, marker='o')
        plt.axhline(self.params.tol, color='k', linestyle='--', lw=0.8, label='tolerance')
        plt.xlabel("Newton step")
        plt.ylabel("|W|")
        plt.title("Newton-Raphson Convergence")
        plt.legend()
        plt.show()

    def plot_data(self, animate=False):
        self.plot_boundary_nodes()

        self.plot_solution()
        self.plot_convergence()

        if animate:
            self.plot_iterates()

#%% # Example Usage

if __name__ == '__main__':

    domain = Domain.rectangle(-1.0, 1.0, -1.0, 1.0)
    params = SolverParams(max_its=50, epsilon=0.1, tol=1e-10)

    ch_solver = CahnHilliardFEM(mesh_type="triangular")

    ch_solver._set_system_params(domain, params, init_vol=0.005, initial_condition='smooth', dirichlet=False)

    result = ch_solver.run_analysis()

    if not result.converged:
        logging.warning(f"Reporting a {result.status} iterate.")

    ch_solver.plot_data()

# %%
