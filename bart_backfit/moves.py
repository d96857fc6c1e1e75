import math
import logging
from abc import ABC, abstractmethod

from .params import Tree, TreeNode

logger = logging.getLogger(__name__)


class Move(ABC):
    """
    Base class for the structural Metropolis-Hastings moves of one tree.

    ``propose`` either leaves the tree untouched (returning False) or sets up
    a candidate and fills in the three parts of the log MH ratio. The sampler
    then calls ``accept`` or ``reject``; after ``reject`` the tree is back in
    its original state.
    """
    def __init__(self, sampler, tree: Tree):
        self.sampler = sampler
        self.tree = tree
        self.log_tran_ratio = 0.0
        self.log_prior_ratio = 0.0
        self.log_lkhd_ratio = 0.0

    def propose(self, generator) -> bool:
        if not self.is_feasible():
            return False
        return self.try_propose(generator)

    @property
    def log_mh_ratio(self) -> float:
        ratio = self.log_tran_ratio + self.log_prior_ratio + self.log_lkhd_ratio
        if math.isnan(ratio):
            return -math.inf
        return ratio

    @abstractmethod
    def is_feasible(self) -> bool:
        pass

    @abstractmethod
    def try_propose(self, generator) -> bool:
        pass

    def accept(self):
        pass

    def reject(self):
        pass

    def _draw_rule(self, generator, node: TreeNode):
        model = self.sampler.model
        var = int(generator.integers(0, model.number_of_variables))
        success, cutpoint = model.variable_summary(var).random_cutpoint(generator, node)
        if not success:
            logger.debug("No legal cutpoint for variable %d at node %d", var, node.id)
        return success, var, cutpoint


class Grow(Move):
    """
    Split a random leaf on a random variable and cutpoint.
    """
    def is_feasible(self):
        return self.sampler.model.number_of_variables > 0

    def try_propose(self, generator):
        tree = self.tree
        sampler = self.sampler
        leaf = tree.random_leaf(generator)
        success, var, cutpoint = self._draw_rule(generator, leaf)
        if not success:
            return False

        log_p_grow = math.log(sampler.move_probabilities(tree)["grow"])
        n_leaves = tree.number_of_leaves()
        parent_lkhd = sampler.log_integrated_likelihood(leaf.compute_suf())

        leaf.set_variable_and_cutpoint(var, cutpoint)
        left, right = tree.grow(leaf, leaf.mean, leaf.mean)
        self.node = leaf
        children_lkhd = (sampler.log_integrated_likelihood(left.compute_suf())
                         + sampler.log_integrated_likelihood(right.compute_suf()))

        log_p_prune = math.log(sampler.move_probabilities(tree)["prune"])
        n_parents_of_leaves = tree.number_of_parents_of_leaves()

        self.log_tran_ratio = (log_p_prune - math.log(n_parents_of_leaves)
                               - log_p_grow + math.log(n_leaves))
        self.log_prior_ratio = sampler.tree_prior.log_grow_ratio(leaf.depth)
        self.log_lkhd_ratio = children_lkhd - parent_lkhd
        return True

    def reject(self):
        self.tree.prune_descendants(self.node)


class Prune(Move):
    """
    Collapse a random parent of two leaves into a leaf.
    """
    def is_feasible(self):
        return self.tree.number_of_parents_of_leaves() > 0

    def try_propose(self, generator):
        tree = self.tree
        sampler = self.sampler
        node = tree.random_parent_of_leaves(generator)
        self.node = node

        log_p_prune = math.log(sampler.move_probabilities(tree)["prune"])
        n_parents_of_leaves = tree.number_of_parents_of_leaves()
        # After the prune the tree has one leaf fewer, and only grow is
        # possible if the root itself is pruned.
        n_leaves_after = tree.number_of_leaves() - 1
        if node.is_root:
            log_p_grow = 0.0
        else:
            log_p_grow = math.log(sampler.proposal_probs["grow"] / sampler.total_proposal_mass)

        children_lkhd = (sampler.log_integrated_likelihood(node.left_child.compute_suf())
                         + sampler.log_integrated_likelihood(node.right_child.compute_suf()))
        parent_lkhd = sampler.log_integrated_likelihood(node.compute_suf())

        self.log_tran_ratio = (log_p_grow - math.log(n_leaves_after)
                               - log_p_prune + math.log(n_parents_of_leaves))
        self.log_prior_ratio = -sampler.tree_prior.log_grow_ratio(node.depth)
        self.log_lkhd_ratio = parent_lkhd - children_lkhd
        return True

    def accept(self):
        self.tree.prune_descendants(self.node)


class Change(Move):
    """
    Replace the split rule of a random parent of two leaves.
    """
    def is_feasible(self):
        return self.tree.number_of_parents_of_leaves() > 0

    def try_propose(self, generator):
        tree = self.tree
        sampler = self.sampler
        node = tree.random_parent_of_leaves(generator)
        success, var, cutpoint = self._draw_rule(generator, node)
        if not success:
            return False
        self.node = node
        self.old_rule = (node.variable_index, node.cutpoint)

        old_lkhd = (sampler.log_integrated_likelihood(node.left_child.compute_suf())
                    + sampler.log_integrated_likelihood(node.right_child.compute_suf()))
        node.set_variable_and_cutpoint(var, cutpoint)
        node.reroute_children()
        new_lkhd = (sampler.log_integrated_likelihood(node.left_child.compute_suf())
                    + sampler.log_integrated_likelihood(node.right_child.compute_suf()))

        # Proposal and prior terms cancel: same node, same shape.
        self.log_tran_ratio = 0.0
        self.log_prior_ratio = 0.0
        self.log_lkhd_ratio = new_lkhd - old_lkhd
        return True

    def reject(self):
        self.node.set_variable_and_cutpoint(*self.old_rule)
        self.node.reroute_children()


all_moves = {"grow": Grow,
             "prune": Prune,
             "change": Change}
