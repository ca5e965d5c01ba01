from .main import create_effect, func, EffectsError, UnhandledEffectError, ResumeError

from .main import Operation, EffectDescriptor, EffectInstance, Handler, Runner, Deferred, Context, Branch
from .utils import sequence, runnable
from .effects import State, Random, Choice
from .concurrency import Timeline, Timer, Sleep
