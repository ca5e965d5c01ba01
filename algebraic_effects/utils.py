from algebraic_effects.main import EffectInstance, EffectsError

from functools import wraps


def sequence(effects):
    """Yield each of the effects.
    Effects can be a (nested) list/dict structure; the results mirror it
    """
    if isinstance(effects, EffectInstance):
        val = yield effects
        return val
    if isinstance(effects, list):
        results = []
        for effect in effects:
            result = yield from sequence(effect)
            results.append(result)
    else:
        if not isinstance(effects, dict):
            raise EffectsError(f"Input to sequence should be an EffectInstance (or nested list/dict of them): {effects!r}")
        results = dict()
        for k, effect in effects.items():
            result = yield from sequence(effect)
            results[k] = result
    return results


def runnable(runner, multi=False):
    """
    Creates a decorator that turns a program into a normal function running it on the given runner.
    Returns the program's result, or the list of results of all branches if multi is set.
    """
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            if multi:
                return runner.run_multi(f, args=args, kwargs=kwargs).result()
            results = runner.run(f, args=args, kwargs=kwargs).result()
            if not results:
                raise EffectsError(f"{f.__name__} was never resumed to completion")
            return results[0]
        return wrapper
    return decorator
