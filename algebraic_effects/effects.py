import random

from algebraic_effects.main import EffectDescriptor, func


class _StateEffect(EffectDescriptor):
    def of(self, initial, effect=None):
        """
        Returns a runner holding a single mutable cell, starting at initial.
        Pass another effect declaring get, set and update to keep a second, independent cell.
        Every branch of every run sharing this runner reads and writes the same cell: forks do not snapshot it.
        set and update resume with the new value.
        """
        current = initial

        def get(ctx):
            return lambda: ctx.resume(current)

        def set_(ctx):
            def impl(value):
                nonlocal current
                current = value
                ctx.resume(current)
            return impl

        def update(ctx):
            def impl(fn):
                nonlocal current
                current = fn(current)
                ctx.resume(current)
            return impl

        return (effect or self).handler(dict(get=get, set=set_, update=update))


State = _StateEffect("State", dict(
    get=func([], "a"),
    set=func(["a"], "a"),
    update=func(["a -> a"], "a"),
))


class _RandomEffect(EffectDescriptor):
    def _runner(self, rng):
        def get_int(ctx):
            # inclusive of both ends
            return lambda low, high: ctx.resume(rng.randint(low, high))

        def from_array(ctx):
            return lambda items: ctx.resume(rng.choice(items))

        return self.handler(dict(get_int=get_int, from_array=from_array))

    @property
    def effect(self):
        """Runner drawing from the module-level generator"""
        return self._runner(random)

    def seeded(self, seed):
        """Runner drawing from its own generator, seeded for reproducible runs"""
        return self._runner(random.Random(seed))


Random = _RandomEffect("Random", dict(
    get_int=func(["number", "number"], "number"),
    from_array=func(["list a"], "a"),
))


class _ChoiceEffect(EffectDescriptor):
    @property
    def each(self):
        """
        Runner exploring every choice: pick resumes once per item, in order,
        and guard prunes the branch when its condition is false.
        Only useful with run_multi.
        """
        def pick(ctx):
            def impl(items):
                for item in items:
                    ctx.resume(item)
            return impl

        def guard(ctx):
            def impl(condition):
                if condition:
                    ctx.resume()
            return impl

        return self.handler(dict(pick=pick, guard=guard))


Choice = _ChoiceEffect("Choice", dict(
    pick=func(["list a"], "a", is_multi=True),
    guard=func(["bool"], "none"),
))
