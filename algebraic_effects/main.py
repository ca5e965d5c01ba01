from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import inspect
import logging
import types
from uuid import uuid4


logger = logging.getLogger(__name__)


class EffectsError(Exception):
    pass


class UnhandledEffectError(EffectsError):
    pass


class ResumeError(EffectsError):
    pass


@dataclass(frozen=True)
class Operation():
    """
    Declaration of one operation of an effect.
    The shapes are descriptive only, nothing checks arguments or results against them.
    """
    arg_shapes: tuple = ()
    result_shape: str = "*"
    is_multi: bool = False

    def __str__(self):
        signature = f"({', '.join(self.arg_shapes)}) -> {self.result_shape}"
        if self.is_multi:
            return f"{signature} [multi]"
        return signature


def func(arg_shapes=(), result_shape="*", is_multi=False):
    """
    Declares an operation taking arguments of the given shapes.
    If is_multi is set, a continuation of the operation may be resumed more than once (see Runner.run_multi)
    """
    if isinstance(arg_shapes, str) or not isinstance(arg_shapes, Sequence):
        raise EffectsError(f"Argument shapes should be a sequence of strings, got {arg_shapes!r}")
    for shape in arg_shapes:
        if not isinstance(shape, str):
            raise EffectsError(f"Argument shapes should be a sequence of strings, got {arg_shapes!r}")
    if not isinstance(result_shape, str):
        raise EffectsError(f"Result shape should be a string, got {result_shape!r}")
    return Operation(tuple(arg_shapes), result_shape, bool(is_multi))


@dataclass(frozen=True)
class EffectInstance():
    """
    One invocation of an operation, yielded by a program to the runner.
    Building one does nothing else.
    """
    effect_name: str
    op_name: str
    args: tuple = ()
    is_multi: bool = False

    def __str__(self):
        return f"{self.effect_name}.{self.op_name}"


class EffectDescriptor():
    """
    A named family of operations.
    Every declared operation is available as a method returning an EffectInstance, e.g.

        Log = create_effect("Log", dict(write=func(["str"])))
        yield Log.write("hello")
    """
    _reserved = frozenset(["name", "operations"])

    def __init__(self, name, operations):
        if not isinstance(name, str) or not name:
            raise EffectsError(f"Effect name should be a non-empty string, got {name!r}")
        if not isinstance(operations, Mapping):
            raise EffectsError(f"Operations of {name} should be a mapping, got {type(operations).__name__}")
        for op_name, operation in operations.items():
            if not isinstance(op_name, str) or not op_name.isidentifier() or op_name.startswith("_"):
                raise EffectsError(f"Invalid operation name {op_name!r} for effect {name}")
            if op_name in self._reserved or hasattr(type(self), op_name):
                raise EffectsError(f"Operation name {op_name!r} clashes with an attribute of {type(self).__name__}")
            if not isinstance(operation, Operation):
                raise EffectsError(f"Operation {name}.{op_name} should be declared with func(), got {type(operation).__name__}")
        self.name = name
        self.operations = types.MappingProxyType(dict(operations))
        for op_name, operation in self.operations.items():
            self.__dict__[op_name] = self._factory(op_name, operation)

    def _factory(self, op_name, operation):
        effect_name = self.name

        def make(*args):
            return EffectInstance(effect_name, op_name, args, operation.is_multi)
        make.__name__ = op_name
        make.__qualname__ = f"{effect_name}.{op_name}"
        make.__doc__ = f"{effect_name}.{op_name} :: {operation}"
        return make

    def __setattr__(self, key, value):
        if "operations" in self.__dict__:
            raise EffectsError(f"Effect {self.name} is immutable")
        super().__setattr__(key, value)

    def handler(self, impls):
        """
        Binds implementations to operations of this effect.
        Each implementation takes a Context and returns a function of the operation's arguments.
        Returns a Runner over just this handler.
        """
        return Runner([Handler(self, impls)])

    def __repr__(self):
        ops = ", ".join(f"{op_name} :: {operation}" for op_name, operation in self.operations.items())
        return f"{type(self).__name__}({self.name}: {ops})"


def create_effect(name, op_specs):
    return EffectDescriptor(name, op_specs)


class Handler():
    def __init__(self, effect, impls):
        if not isinstance(impls, Mapping):
            raise EffectsError(f"Handler implementations for {effect.name} should be a mapping, got {type(impls).__name__}")
        unknown = [op_name for op_name in impls if op_name not in effect.operations]
        if unknown:
            raise EffectsError(f"Unknown operation(s) {', '.join(map(repr, unknown))} for effect {effect.name}")
        for op_name, impl in impls.items():
            if not callable(impl):
                raise EffectsError(f"Implementation of {effect.name}.{op_name} is not callable")
        self.effect = effect
        self.impls = types.MappingProxyType(dict(impls))

    def __str__(self):
        return f"Handler({self.effect.name})"


class Runner():
    """
    An immutable stack of handlers, innermost first.
    """
    def __init__(self, handlers):
        self.handlers = tuple(handlers)

    def with_(self, layer):
        """
        Returns a runner which falls back to the given handler (or runner) for effects not handled here.
        The layer's handlers are shared, not copied: state they hold is seen by every branch of every run.
        """
        if isinstance(layer, Handler):
            handlers = (layer,)
        elif isinstance(layer, Runner):
            handlers = layer.handlers
        else:
            raise EffectsError(f"Can only layer a Handler or a Runner, got {type(layer).__name__}")
        return Runner(self.handlers + handlers)

    def lookup(self, effect_name):
        for handler in self.handlers:
            if handler.effect.name == effect_name:
                return handler
        return None

    def run(self, program, args=(), kwargs=None):
        """
        Prepares a run in which every continuation may be used at most once.
        Nothing happens until the returned Deferred is forked.
        """
        return Deferred(self, program, args, kwargs, multi=False)

    def run_multi(self, program, args=(), kwargs=None, check_replay=True):
        """
        Prepares a run in which continuations may be resumed any number of times, each resume forking a new branch.
        Nothing happens until the returned Deferred is forked.

        Branches after the first resume of a suspension are rebuilt by re-running the program and replaying recorded values,
        so code between effects must be deterministic.  With check_replay, the replayed effects are compared to the recorded ones.
        """
        return Deferred(self, program, args, kwargs, multi=True, check_replay=check_replay)

    def __str__(self):
        return f"Runner[{', '.join(str(h) for h in self.handlers)}]"


class Deferred():
    """
    Lazily started result of a run: a list of terminal values, one per finished branch, in the order branches finished.
    """
    def __init__(self, runner, program, args=(), kwargs=None, *, multi, check_replay=True):
        self.runner = runner
        self.program = program
        self.args = tuple(args)
        self.kwargs = dict(kwargs or {})
        self.multi = multi
        self.check_replay = check_replay

    def _start(self, on_failure, on_success):
        execution = _Execution(self, on_failure, on_success)
        execution.start()
        return execution

    def fork(self, on_failure, on_success):
        """
        Starts a new execution.  Exactly one of the callbacks is called once, either with the first error or with the list of results.
        """
        self._start(on_failure, on_success)

    def result(self, drive=None):
        """
        Forks and returns the list of results, raising the failure if there is one.
        If given, drive is called to deliver asynchronous resumes (e.g. Timeline.run) before giving up.
        """
        outcome = dict()

        def on_failure(error):
            outcome["error"] = error

        def on_success(values):
            outcome["values"] = values

        execution = self._start(on_failure, on_success)
        if not outcome and drive is not None:
            drive()
        if "error" in outcome:
            raise outcome["error"]
        if "values" not in outcome:
            context = next(iter(execution.open_contexts))
            raise EffectsError(
                f"Pending continuations detected waiting for {context.effect}, in {context.branch.stack()}"
            )
        return outcome["values"]


_noval = object()


class Branch():
    """
    One path through the continuation tree: the program run from its start (or from the parent's suspension)
    up to its next suspension or its terminal value.
    """
    def __init__(self, program, args=(), kwargs=None, *, parent=None, value=None):
        self.id = uuid4()
        self._program = program
        self._args = args
        self._kwargs = kwargs or dict()
        self._parent = parent
        # what the parent's suspension was resumed with to start this branch
        self._value = value
        self._it = None
        self._effect = None
        self._frame = None
        self._done = False
        self._result = None
        if parent is None:
            self._it = program(*args, **self._kwargs)
            if not isinstance(self._it, types.GeneratorType):
                self._result = self._it
                self._it = None
                self._done = True

    def child(self, value):
        return Branch(self._program, self._args, self._kwargs, parent=self, value=value)

    def ancestors(self):
        """
        Suspended branches leading to this one, innermost first
        """
        branch = self._parent
        while branch is not None:
            yield branch
            branch = branch._parent

    def path(self):
        """
        The (effect, value) pairs taken from the root to this branch
        """
        path = []
        branch = self
        for parent in self.ancestors():
            path.append((parent._effect, branch._value))
            branch = parent
        path.reverse()
        return path

    def take(self, other):
        """
        Continue from other's suspended generator rather than replaying
        """
        self._it, other._it = other._it, None

    def replay(self, check=True):
        """
        Rebuilds the generator by running the program again and sending it the values along the path.
        Leaves it suspended where the parent was, so that advancing sends this branch's own value.
        """
        it = self._program(*self._args, **self._kwargs)
        if not isinstance(it, types.GeneratorType):
            raise EffectsError(f"Program diverged during replay: {self._program.__name__} no longer returns a generator")
        value = None
        for i, (expected, recorded) in enumerate(self.path()):
            try:
                effect = it.send(value)
            except StopIteration:
                raise EffectsError(f"Program diverged during replay: returned before suspension {i} ({expected})")
            if check and not (
                isinstance(effect, EffectInstance)
                and (effect.effect_name, effect.op_name) == (expected.effect_name, expected.op_name)
            ):
                it.close()
                raise EffectsError(f"Program diverged during replay: expected {expected} at suspension {i}, got {effect}")
            value = recorded
        self._it = it

    def send(self, value=None):
        assert not self._done
        try:
            effect = self._it.send(value)
        except StopIteration as e:
            self._done = True
            self._result = e.value
            self._effect = None
            self._it = None
            return dict(done=True)
        self._effect = effect
        self._frame = inspect.getframeinfo(self._it.gi_frame) if self._it.gi_frame is not None else None
        return dict(done=False, effect=effect)

    def close(self):
        if self._it is not None:
            self._it.close()
            self._it = None

    def __hash__(self):
        return self.id.int

    def __str__(self):
        return f"Branch[{self.id.hex}] (waiting for {self._effect})"

    def _debuglines(self):
        if self._frame is None:
            return [f"Branch[{self.id.hex}]"]
        lines = [f"File {self._frame.filename}, line {self._frame.lineno}, in {self._frame.function}"]
        if self._frame.code_context:
            lines.append(f"  {self._frame.code_context[0].strip()}")
        return lines

    def stack(self, indent=0, limit=10):
        """
        Where this branch and its most recent ancestors were suspended, outermost first
        """
        sections = []
        branch = self
        for parent in self.ancestors():
            if len(sections) == limit:
                sections.append([f"... {parent._effect} and earlier suspensions"])
                break
            sections.append([f"Resumed {parent._effect} with {branch._value!r}, suspended at"] + branch._debuglines())
            branch = parent
        else:
            sections.append(branch._debuglines())
        return "\n".join(" " * indent + line for section in reversed(sections) for line in section)

    def is_done(self):
        return self._done

    def get_result(self):
        if not self._done:
            raise EffectsError("Tried to get result on a Branch that was still running!")
        return self._result

class Context():
    """
    Passed to an operation implementation; controls the continuation of the suspended branch.

    The continuation is open while the implementation runs and while tickets from defer() are outstanding.
    Using it once closed raises ResumeError.
    """
    def __init__(self, execution, branch, effect):
        self._execution = execution
        self.branch = branch
        self.effect = effect
        self._uses = 0
        # the running implementation holds the continuation open, as does each ticket from defer()
        self._holds = 1

    def is_open(self):
        return self._holds > 0

    def _use(self):
        if self._execution.failed:
            logger.debug(f"ignoring continuation of {self.effect}, run already failed")
            return False
        if not self.is_open():
            raise ResumeError(
                f"Continuation of {self.effect} used after it was closed (use defer() to resume after the handler returns)"
            )
        if not self._execution.multi and self._uses:
            hint = ", multi-shot operations need run_multi" if self.effect.is_multi else ""
            raise ResumeError(f"Continuation of {self.effect} used more than once in a single-result run{hint}")
        self._uses += 1
        return True

    def resume(self, value=None):
        if self._use():
            self._execution.resume(self, value)

    def defer(self):
        """
        Returns a callable which resumes the continuation once, at any later time.
        Until it is called (or canceled), the run is not complete.
        """
        if not self._use():
            return _Resumer(self, inert=True)
        self._holds += 1
        return _Resumer(self)

    def end(self, value=None):
        """
        Finishes this branch with the given terminal value, skipping the rest of the program.
        """
        if self._use():
            self._execution.terminate(self.branch, value)

    def throw_error(self, error):
        self._execution.fail(error)

    def call(self, program, *args, **kwargs):
        """
        Runs another program with the same handlers and resumes with its result
        """
        if self._execution.failed:
            return
        resumer = self.defer()

        def on_failure(error):
            self.throw_error(error)
            resumer.cancel()

        def on_success(values):
            if values:
                resumer(values[0])
            else:
                resumer.cancel()

        self._execution.runner.run(program, args, kwargs).fork(on_failure, on_success)

    def _release(self):
        self._holds -= 1
        if self._holds == 0:
            self._execution.close(self)


class _Resumer():
    def __init__(self, context, inert=False):
        self._context = context
        self._used = inert

    def __call__(self, value=None):
        if self._used:
            if self._context._execution.failed:
                return
            raise ResumeError(f"Deferred resume of {self._context.effect} called more than once")
        self._used = True
        try:
            if not self._context._execution.failed:
                self._context._execution.resume(self._context, value)
        finally:
            self._context._release()

    def cancel(self):
        if self._used:
            return
        self._used = True
        self._context._release()


class _Execution():
    def __init__(self, deferred, on_failure, on_success):
        self.runner = deferred.runner
        self.program = deferred.program
        self.args = deferred.args
        self.kwargs = deferred.kwargs
        self.multi = deferred.multi
        self.check_replay = deferred.check_replay
        self._on_failure = on_failure
        self._on_success = on_success
        self.results = []
        self.open_contexts = set()
        self.active = 0
        self.root = None
        self.settled = False
        self.failed = False

    def start(self):
        logger.debug(f"starting {getattr(self.program, '__name__', self.program)} ({'multi' if self.multi else 'single'})")
        try:
            self.root = Branch(self.program, self.args, self.kwargs)
        except Exception as e:
            self.fail(e)
            return
        self.advance(self.root)

    def advance(self, branch, value=_noval):
        self.active += 1
        try:
            self._step(branch, value)
        finally:
            self.active -= 1
        self.check_complete()

    def _step(self, branch, value):
        if self.failed:
            return
        if not branch.is_done():
            try:
                step = branch.send() if value is _noval else branch.send(value)
            except Exception as e:
                self.fail(e)
                return
        if branch.is_done():
            self.terminate(branch, branch.get_result())
            return
        self._handle(branch, step["effect"])

    def _handle(self, branch, effect):
        if not isinstance(effect, EffectInstance):
            self.fail(EffectsError(f"Branch yielded non-effect {type(effect)}: {branch.stack()}"))
            return
        handler = self.runner.lookup(effect.effect_name)
        impl = None if handler is None else handler.impls.get(effect.op_name)
        if impl is None:
            self.fail(UnhandledEffectError(f"Unhandled effect {effect} in {self.runner}, yielded at\n{branch.stack(indent=2)}"))
            return
        logger.debug(f"effect: {effect}{effect.args!r}")
        context = Context(self, branch, effect)
        self.open_contexts.add(context)
        try:
            impl(context)(*effect.args)
        except Exception as e:
            self.fail(e)
        finally:
            context._release()

    def resume(self, context, value):
        parent = context.branch
        child = parent.child(value)
        if parent._it is not None:
            child.take(parent)
        else:
            logger.debug(f"replaying to fork {parent._effect} with {value!r}")
            try:
                child.replay(check=self.check_replay)
            except Exception as e:
                self.fail(e)
                return
        # runs the branch to its next suspension before returning to the handler
        self.advance(child, value)

    def terminate(self, branch, value):
        if self.failed:
            return
        logger.debug(f"branch {branch.id.hex} finished with {value!r}")
        self.results.append(value)

    def close(self, context):
        self.open_contexts.discard(context)
        # a generator no resume took will never run again
        context.branch.close()
        self.check_complete()

    def check_complete(self):
        if self.settled or self.active or self.open_contexts:
            return
        self.settled = True
        logger.debug(f"run finished with {len(self.results)} result(s)")
        self._on_success(list(self.results))

    def fail(self, error):
        if self.settled:
            if self.failed:
                logger.warning(f"discarding error after run already failed: {error!r}")
                return
            raise error
        self.settled = True
        self.failed = True
        logger.debug(f"run failed: {error!r}")
        self._on_failure(error)
