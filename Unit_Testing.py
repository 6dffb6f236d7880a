import unittest
from unittest import mock

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import scipy.sparse as sp

import Cahn_Hilliard_FEM as ch
# Import the classes we need from Cahn_Hilliard_FEM.py
from Cahn_Hilliard_FEM import (Domain, Mesh, SolverParams, TriMesh, StructuredTriMesh, CahnHilliardFEM,
                               NewtonResult, DegenerateElementError, LinearSolveError,
                               assemble_local, assemble_global, newton_raphson)


def single_triangle_mesh():
    return Mesh(np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]), np.array([[0, 1, 2]]), h0=1.0)


def square_fan_mesh():
    """
    Unit square corners 0-3 plus the centre node 4, four triangles meeting at the centre.
    """
    nodes = np.array([
        [0.0, 0.0],
        [1.0, 0.0],
        [1.0, 1.0],
        [0.0, 1.0],
        [0.5, 0.5]
    ])
    elements = np.array([
        [0, 1, 4],
        [1, 2, 4],
        [2, 3, 4],
        [3, 0, 4]
    ])
    return Mesh(nodes, elements, h0=0.5)


class TestLocalAssembly(unittest.TestCase):
    """
    Test the local Jacobian and residual of a single linear triangle.
    """
    def setUp(self):
        self.coords = np.array([
            [0.1, 0.0],
            [1.3, 0.2],
            [0.4, 0.9]
        ])
        self.eps = 0.1

    def test_shapes(self):
        J_e, f_e = assemble_local(self.coords, np.array([0.3, -0.2, 0.7]), self.eps)
        self.assertEqual(J_e.shape, (3, 3))
        self.assertEqual(f_e.shape, (3,))

    def test_stiffness_symmetric(self):
        """
        The gradient-gradient part is symmetric and independent of the nodal values.
        """
        K = ch.local_stiffness(*ch.element_geometry(self.coords))
        np.testing.assert_allclose(K, K.T, atol=1e-14)

        # Rows of the stiffness matrix sum to zero (constants are in its kernel)
        np.testing.assert_allclose(K.sum(axis=1), np.zeros(3), atol=1e-13)

        for u in (np.zeros(3), np.array([0.9, -0.4, 0.1]), np.array([-1.0, 2.0, 0.5])):
            J_e, _ = assemble_local(self.coords, u, self.eps)
            np.testing.assert_allclose(J_e, J_e.T, atol=1e-13)

        # At u = 0 the tangent is exactly epsilon K - M
        area, _ = ch.element_geometry(self.coords)
        J_zero, _ = assemble_local(self.coords, np.zeros(3), self.eps)
        np.testing.assert_array_equal(J_zero, self.eps * K - ch.local_mass(area))

    def test_mass_matrix_integrates_area(self):
        area, _ = ch.element_geometry(self.coords)
        M = ch.local_mass(area)
        self.assertAlmostEqual(M.sum(), area)
        self.assertAlmostEqual(area, 0.5 * abs(np.linalg.det(np.array([
            self.coords[1] - self.coords[0],
            self.coords[2] - self.coords[0]]))))

    def test_constant_roots_give_zero_residual(self):
        """
        u = -1, 0, 1 are roots of u^3 - u; a constant field has no gradient term either.
        """
        for c in (-1.0, 0.0, 1.0):
            _, f_e = assemble_local(self.coords, np.full(3, c), self.eps)
            np.testing.assert_allclose(f_e, np.zeros(3), atol=1e-14,
                err_msg=f"Residual is not zero for the constant root {c}")

        _, f_e = assemble_local(self.coords, np.zeros(3), self.eps)
        self.assertTrue(np.all(f_e == 0.0))

    def test_constant_non_root_residual(self):
        """
        For a constant c the residual reduces to (c^3 - c) * area / 3 at every vertex.
        """
        c = 0.5
        area, _ = ch.element_geometry(self.coords)
        _, f_e = assemble_local(self.coords, np.full(3, c), self.eps)
        np.testing.assert_allclose(f_e, np.full(3, (c**3 - c) * area / 3))

    def test_jacobian_matches_finite_differences(self):
        u = np.array([0.3, -0.8, 0.6])
        J_e, _ = assemble_local(self.coords, u, self.eps)

        h = 1e-6
        J_fd = np.zeros((3, 3))
        for e in range(3):
            du = np.zeros(3)
            du[e] = h
            _, f_plus = assemble_local(self.coords, u + du, self.eps)
            _, f_minus = assemble_local(self.coords, u - du, self.eps)
            J_fd[:, e] = (f_plus - f_minus) / (2 * h)

        np.testing.assert_allclose(J_e, J_fd, atol=1e-8)

    def test_cubic_term_exact_for_reference_triangle(self):
        """
        Reference triangle, u = phi_0: the cubic term at vertex 0 is the integral of phi_0^4 = 2 * area * 4! / 6!.
        """
        coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        u = np.array([1.0, 0.0, 0.0])
        _, f_e = assemble_local(coords, u, self.eps)

        area, dN_global = ch.element_geometry(coords)
        K = ch.local_stiffness(area, dN_global)
        M = ch.local_mass(area)
        cubic = f_e - self.eps * (K @ u) + M @ u
        self.assertAlmostEqual(cubic[0], 2 * 0.5 * 24 / 720)
        self.assertAlmostEqual(cubic[1], 2 * 0.5 * 6 / 720)

    def test_degenerate_triangle_raises(self):
        collinear = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]])
        with self.assertRaises(DegenerateElementError):
            assemble_local(collinear, np.zeros(3), self.eps)

    def test_clockwise_triangle_raises(self):
        clockwise = self.coords[[0, 2, 1]]
        with self.assertRaises(DegenerateElementError):
            assemble_local(clockwise, np.zeros(3), self.eps)

    def test_invalid_epsilon_raises(self):
        with self.assertRaises(ValueError):
            assemble_local(self.coords, np.zeros(3), 0.0)

    def test_micro_scale_triangle_accepted(self):
        """
        The degeneracy check is relative to the element size: a 1e-8 triangle is valid
        and has the same stiffness as the unit reference triangle.
        """
        unit = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        area, dN_global = ch.element_geometry(1e-8 * unit)
        self.assertAlmostEqual(area / 0.5e-16, 1.0)

        K_micro = ch.local_stiffness(area, dN_global)
        K_unit = ch.local_stiffness(*ch.element_geometry(unit))
        np.testing.assert_allclose(K_micro, K_unit, rtol=1e-10)

        # A sliver thin relative to its own size is still rejected
        sliver = 1e-8 * np.array([[0.0, 0.0], [1.0, 0.0], [0.5, 1e-16]])
        with self.assertRaises(DegenerateElementError):
            ch.element_geometry(sliver)


class TestGlobalAssembly(unittest.TestCase):
    """
    Test scatter-add assembly of the global Jacobian and residual.
    """
    def test_shared_node_contributions_add(self):
        """
        Two triangles sharing only node 0: J[0, 0] is the sum of both local diagonals.
        """
        nodes = np.array([
            [0.0, 0.0],
            [1.0, 0.0],
            [0.0, 1.0],
            [-1.0, 0.0],
            [0.0, -1.0]
        ])
        elements = np.array([[0, 1, 2], [0, 3, 4]])
        mesh = Mesh(nodes, elements, h0=1.0)
        u = np.array([0.2, -0.5, 0.9, 0.4, -0.1])

        J, f = assemble_global(mesh, u, 0.1)
        J_a, f_a = assemble_local(nodes[elements[0]], u[elements[0]], 0.1)
        J_b, f_b = assemble_local(nodes[elements[1]], u[elements[1]], 0.1)

        self.assertAlmostEqual(J[0, 0], J_a[0, 0] + J_b[0, 0])
        self.assertAlmostEqual(f[0], f_a[0] + f_b[0])

        # Nodes that do not share a triangle are structurally zero
        self.assertEqual(J[1, 3], 0.0)
        self.assertEqual(J[2, 4], 0.0)
        self.assertAlmostEqual(J[1, 2], J_a[1, 2])

    def test_sparsity_pattern(self):
        mesh = square_fan_mesh()
        J, _ = assemble_global(mesh, np.linspace(-1, 1, 5), 0.1)

        # Opposite corners 0-2 and 1-3 never share a triangle
        dense = J.toarray()
        self.assertEqual(dense[0, 2], 0.0)
        self.assertEqual(dense[1, 3], 0.0)

        # Each corner couples to itself, two corners and the centre; the centre to all five
        self.assertEqual(J.nnz, 4 * 4 + 5)

    def test_reassembly_is_identical(self):
        mesh = StructuredTriMesh(Domain.rectangle(), Nx=4, Ny=3).generate_mesh()
        u = ch.smooth_initial_condition(mesh.nodes)

        J1, f1 = assemble_global(mesh, u, 0.1)
        J2, f2 = assemble_global(mesh, u, 0.1)

        self.assertEqual((J1 != J2).nnz, 0)
        self.assertTrue(np.array_equal(f1, f2))

    def test_global_matrix_symmetric(self):
        mesh = StructuredTriMesh(Domain.rectangle(), Nx=3, Ny=3).generate_mesh()
        u = ch.random_initial_condition(mesh.nodes, seed=3)
        J, _ = assemble_global(mesh, u, 0.1)
        self.assertLess(abs(J - J.T).max(), 1e-12)

    def test_wrong_iterate_length_raises(self):
        with self.assertRaises(ValueError):
            assemble_global(square_fan_mesh(), np.zeros(4), 0.1)


class TestNewtonRaphson(unittest.TestCase):
    """
    Test the Newton iteration, its boundary handling and its outcome tagging.
    """
    def test_free_single_triangle_converges_immediately(self):
        mesh = single_triangle_mesh()
        boundary, interior = ch.free_boundary(mesh)
        result = newton_raphson(mesh, np.zeros(3), boundary, interior, SolverParams())

        self.assertEqual(result.status, NewtonResult.CONVERGED)
        self.assertTrue(result.converged)
        self.assertEqual(result.step, 1)
        self.assertEqual(result.norms[0], 0.0)
        self.assertEqual(result.iterates.shape, (3, 2))

    def test_boundary_values_never_change(self):
        mesh = square_fan_mesh()
        boundary, interior = np.array([0, 1]), np.array([2, 3, 4])
        u0 = np.array([0.7, -0.3, 0.4, -0.6, 0.2])
        params = SolverParams(max_its=6, epsilon=0.1, tol=1e-10)

        result = newton_raphson(mesh, u0, boundary, interior, params)
        self.assertNotEqual(result.status, NewtonResult.LINEAR_SOLVE_FAILED)

        # Iterate 0 has the boundary entries forced to zero
        self.assertEqual(result.iterates[0, 0], 0.0)
        self.assertEqual(result.iterates[1, 0], 0.0)
        self.assertEqual(result.iterates[2, 0], 0.4)

        for k in range(result.step):
            self.assertEqual(result.iterates[0, k + 1], result.iterates[0, k])
            self.assertEqual(result.iterates[1, k + 1], result.iterates[1, k])

    def test_smooth_initial_condition_converges(self):
        mesh = StructuredTriMesh(Domain.rectangle(-1.0, 1.0, -1.0, 1.0), Nx=16, Ny=16).generate_mesh()
        boundary, interior = ch.free_boundary(mesh)
        u0 = ch.smooth_initial_condition(mesh.nodes)
        params = SolverParams(max_its=50, epsilon=0.1, tol=1e-10)

        result = newton_raphson(mesh, u0, boundary, interior, params)

        self.assertEqual(result.status, NewtonResult.CONVERGED)
        self.assertLess(result.step, 50)
        self.assertLess(result.norms[-1], 1e-10)

        # Quadratic convergence at the end: the last norms strictly decrease
        tail = result.norms[-3:]
        self.assertTrue(np.all(np.diff(tail) < 0), f"Correction norms not decreasing: {tail}")

        # The stored history stops at the converged iterate
        self.assertEqual(result.iterates.shape, (mesh.num_nodes, result.step + 1))

    def test_exhausted_is_tagged(self):
        mesh = square_fan_mesh()
        boundary, interior = ch.free_boundary(mesh)
        u0 = np.array([0.7, -0.3, 0.4, -0.6, 0.2])
        params = SolverParams(max_its=2, epsilon=0.1, tol=1e-300)

        result = newton_raphson(mesh, u0, boundary, interior, params)

        self.assertEqual(result.status, NewtonResult.EXHAUSTED)
        self.assertFalse(result.converged)
        self.assertEqual(result.step, 1)
        self.assertEqual(result.iterates.shape, (5, 2))
        np.testing.assert_array_equal(result.solution, result.iterates[:, 1])

    def test_single_iterate_budget(self):
        mesh = single_triangle_mesh()
        boundary, interior = ch.free_boundary(mesh)
        result = newton_raphson(mesh, np.ones(3), boundary, interior, SolverParams(max_its=1))

        self.assertEqual(result.status, NewtonResult.EXHAUSTED)
        self.assertEqual(result.step, 0)
        self.assertEqual(result.norms.size, 0)

    def test_all_boundary_nodes(self):
        mesh = single_triangle_mesh()
        result = newton_raphson(mesh, np.ones(3), np.arange(3), np.array([], dtype=int), SolverParams())

        self.assertTrue(result.converged)
        np.testing.assert_array_equal(result.solution, np.zeros(3))

    def test_singular_solve_is_reported(self):
        mesh = square_fan_mesh()
        boundary, interior = ch.free_boundary(mesh)
        u0 = np.linspace(-0.5, 0.5, 5)

        with mock.patch.object(ch.spla, "spsolve", side_effect=RuntimeError("Factor is exactly singular")):
            result = newton_raphson(mesh, u0, boundary, interior, SolverParams())

        self.assertEqual(result.status, NewtonResult.LINEAR_SOLVE_FAILED)
        self.assertFalse(result.converged)
        self.assertIn("singular", result.reason)
        self.assertEqual(result.step, 0)
        np.testing.assert_array_equal(result.solution, u0)

    def test_non_finite_correction_is_reported(self):
        mesh = square_fan_mesh()
        boundary, interior = ch.free_boundary(mesh)

        with mock.patch.object(ch.spla, "spsolve", side_effect=lambda A, b: np.full(b.shape, np.nan)):
            result = newton_raphson(mesh, np.zeros(5) + 0.3, boundary, interior, SolverParams())

        self.assertEqual(result.status, NewtonResult.LINEAR_SOLVE_FAILED)
        self.assertTrue(np.all(np.isfinite(result.iterates)))

    def test_singular_reduced_matrix_raises(self):
        """
        A genuinely rank-deficient system is caught without replacing the sparse solver.
        """
        J = sp.csr_matrix(np.array([[1.0, 1.0], [1.0, 1.0]]))
        with self.assertRaises(LinearSolveError):
            ch.solve_reduced(J, np.array([1.0, 2.0]), np.array([0, 1]))

        # Restricting to a nonsingular block solves normally
        J = sp.csr_matrix(np.array([[1.0, 1.0, 0.0], [1.0, 1.0, 0.0], [0.0, 0.0, 4.0]]))
        W = ch.solve_reduced(J, np.array([0.0, 0.0, 2.0]), np.array([2]))
        np.testing.assert_allclose(W, [0.5])

    def test_micro_scale_mesh_runs(self):
        """
        A valid 1e-8 triangle goes through the Newton iteration without a geometry error.
        """
        nodes = 1e-8 * np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        mesh = Mesh(nodes, np.array([[0, 1, 2]]), h0=1e-8)

        J, _ = assemble_global(mesh, np.zeros(3), 0.1)
        self.assertGreater(J[2, 2], 0.0)

        result = newton_raphson(mesh, np.array([0.0, 0.0, 0.5]), np.array([0, 1]), np.array([2]), SolverParams())
        self.assertTrue(result.converged)
        self.assertLess(abs(result.solution[2]), 1e-10)

    def test_invalid_configuration_fails_before_assembly(self):
        mesh = single_triangle_mesh()
        boundary, interior = ch.free_boundary(mesh)

        bad_params = [
            SolverParams(epsilon=0.0),
            SolverParams(epsilon=-0.1),
            SolverParams(max_its=0),
            SolverParams(tol=0.0),
        ]
        with mock.patch.object(ch, "assemble_global") as assemble:
            for params in bad_params:
                with self.assertRaises(ValueError):
                    newton_raphson(mesh, np.zeros(3), boundary, interior, params)
            assemble.assert_not_called()

    def test_invalid_partition_raises(self):
        mesh = square_fan_mesh()
        with self.assertRaises(ValueError):
            newton_raphson(mesh, np.zeros(5), np.array([0, 1]), np.array([1, 2, 3, 4]), SolverParams())
        with self.assertRaises(ValueError):
            newton_raphson(mesh, np.zeros(5), np.array([0]), np.array([1, 2, 3]), SolverParams())

    def test_initial_condition_length_mismatch(self):
        mesh = single_triangle_mesh()
        boundary, interior = ch.free_boundary(mesh)
        with self.assertRaises(ValueError):
            newton_raphson(mesh, np.zeros(4), boundary, interior, SolverParams())


class TestMeshes(unittest.TestCase):
    """
    Test the mesh container and the rectangle mesh providers.
    """
    def test_invalid_node_id(self):
        with self.assertRaises(ValueError):
            Mesh(np.zeros((3, 2)), np.array([[0, 1, 3]]), h0=1.0)

    def test_degenerate_mesh(self):
        nodes = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
        with self.assertRaises(DegenerateElementError):
            Mesh(nodes, np.array([[0, 1, 2]]), h0=1.0)

    def test_structured_mesh(self):
        provider = StructuredTriMesh(Domain.rectangle(-1.0, 1.0, -1.0, 1.0), Nx=4, Ny=2)
        mesh = provider.generate_mesh()

        # The provider keeps the generated Mesh and nothing else
        self.assertIs(provider.mesh, mesh)
        self.assertFalse(hasattr(provider, 'mesh_elements'))

        self.assertEqual(mesh.num_nodes, 15)
        self.assertEqual(mesh.num_elements, 16)
        self.assertAlmostEqual(mesh.h0, 1.0)

        areas = ch.signed_areas(mesh.nodes, mesh.elements)
        self.assertTrue(np.all(areas > 0))
        self.assertAlmostEqual(areas.sum(), 4.0)

    def test_structured_mesh_invalid_subdivision(self):
        with self.assertRaises(ValueError):
            StructuredTriMesh(Domain.rectangle(), Nx=0, Ny=2).generate_mesh()

    def test_triangular_mesh(self):
        mesh = TriMesh(Domain.rectangle(-1.0, 1.0, -1.0, 1.0), max_volume=0.05).generate_mesh()

        areas = ch.signed_areas(mesh.nodes, mesh.elements)
        self.assertTrue(np.all(areas > 0))
        self.assertAlmostEqual(areas.sum(), 4.0)
        self.assertLessEqual(areas.max(), 0.05 + 1e-12)
        self.assertAlmostEqual(mesh.h0, np.sqrt(0.1))

        self.assertTrue(np.all(mesh.nodes >= -1.0 - 1e-12))
        self.assertTrue(np.all(mesh.nodes <= 1.0 + 1e-12))

    def test_invalid_rectangle(self):
        with self.assertRaises(ValueError):
            Domain.rectangle(1.0, -1.0, -1.0, 1.0)


class TestBoundaryAndInitialConditions(unittest.TestCase):
    """
    Test boundary classification and the initial-condition presets.
    """
    def setUp(self):
        self.domain = Domain.rectangle(-1.0, 1.0, -1.0, 1.0)
        self.mesh = StructuredTriMesh(self.domain, Nx=4, Ny=4).generate_mesh()

    def test_rectangle_boundary_partition(self):
        boundary, interior = ch.classify_rectangle_boundary(self.mesh, self.domain.bounds)

        self.assertEqual(boundary.size, 16)
        self.assertEqual(interior.size, 9)
        self.assertEqual(np.intersect1d(boundary, interior).size, 0)

        interior_pts = self.mesh.nodes[interior]
        self.assertTrue(np.all(np.abs(interior_pts) < 1.0))

    def test_rectangle_sides(self):
        sides = ch.rectangle_sides(self.mesh, self.domain.bounds)
        self.assertEqual(set(sides), {'left', 'right', 'bottom', 'top'})
        for mask in sides.values():
            self.assertEqual(mask.sum(), 5)

    def test_free_boundary(self):
        boundary, interior = ch.free_boundary(self.mesh)
        self.assertEqual(boundary.size, 0)
        np.testing.assert_array_equal(interior, np.arange(self.mesh.num_nodes))

    def test_initial_conditions(self):
        pts = self.mesh.nodes

        smooth = ch.smooth_initial_condition(pts)
        self.assertAlmostEqual(smooth[np.argmin(np.linalg.norm(pts, axis=1))], 1.0)

        r1 = ch.random_initial_condition(pts, seed=10)
        r2 = ch.random_initial_condition(pts, seed=10)
        np.testing.assert_array_equal(r1, r2)
        self.assertTrue(np.all((r1 >= -1.0) & (r1 < 1.0)))

        disc = ch.discontinuous_initial_condition(pts)
        self.assertTrue(set(np.unique(disc)) <= {-1.0, 0.0, 1.0})
        np.testing.assert_array_equal(disc[pts[:, 1] > 0], 1.0)


class TestCahnHilliardFEM(unittest.TestCase):
    """
    End-to-end runs through the driver class.
    """
    def setUp(self):
        self.domain = Domain.rectangle(-1.0, 1.0, -1.0, 1.0)

    def tearDown(self):
        plt.close('all')

    def test_unknown_mesh_type(self):
        solver = CahnHilliardFEM(mesh_type="hexagonal")
        with self.assertRaises(ValueError):
            solver._set_system_params(self.domain, init_vol=0.1)

    def test_missing_mesh_parameters(self):
        with self.assertRaises(ValueError):
            CahnHilliardFEM(mesh_type="triangular")._set_system_params(self.domain)
        with self.assertRaises(ValueError):
            CahnHilliardFEM(mesh_type="structured")._set_system_params(self.domain, Nx=4)

    def test_unknown_initial_condition(self):
        solver = CahnHilliardFEM(mesh_type="structured")
        with self.assertRaises(ValueError):
            solver._set_system_params(self.domain, Nx=4, Ny=4, initial_condition='checkerboard')

    def test_invalid_params_fail_at_setup(self):
        solver = CahnHilliardFEM(mesh_type="structured")
        with self.assertRaises(ValueError):
            solver._set_system_params(self.domain, SolverParams(epsilon=-1.0), Nx=4, Ny=4)
        self.assertIsNone(solver.mesh)

    def test_dirichlet_run(self):
        solver = CahnHilliardFEM(mesh_type="structured")
        solver._set_system_params(self.domain, SolverParams(max_its=20), Nx=6, Ny=6,
                                  initial_condition='random', seed=10, dirichlet=True)
        result = solver.run_analysis()

        self.assertEqual(solver.boundary.size, 24)
        self.assertIn(result.status, (NewtonResult.CONVERGED, NewtonResult.EXHAUSTED))
        np.testing.assert_array_equal(result.solution[solver.boundary], 0.0)

    def test_linear_solve_failure_aborts(self):
        solver = CahnHilliardFEM(mesh_type="structured")
        solver._set_system_params(self.domain, Nx=2, Ny=2)

        with mock.patch.object(ch.spla, "spsolve", side_effect=RuntimeError("Factor is exactly singular")):
            with self.assertRaises(LinearSolveError):
                solver.run_analysis()

    def test_plots(self):
        solver = CahnHilliardFEM(mesh_type="structured")
        solver._set_system_params(self.domain, SolverParams(max_its=3), Nx=4, Ny=4, initial_condition='discontinuous')
        solver.run_analysis()

        with mock.patch.object(plt, "show"), mock.patch.object(plt, "pause"):
            solver.plot_data(animate=True)
            solver.plot_solution(step=0)


# Finally, run all tests
if __name__ == '__main__':
    unittest.main()
