"Reverse polish notation integer calculator and the per-process kernel state it runs against."
import operator, re
from dataclasses import dataclass, field


class EvalError(Exception):
    "Evaluation stopped at a token that could not be applied."
    ename = "EvalError"

class StackUnderflowError(EvalError): ename = "StackUnderflow"
class DivisionByZeroError(EvalError): ename = "ZeroDivisionError"
class InvalidTokenError(EvalError): ename = "InvalidToken"


@dataclass
class KernelState:
    "Execution counter and evaluator stack shared by every execute_request in this process."
    exec_count:int = 0
    stack:list[int] = field(default_factory=list)

    @property
    def top(self)->int|None: return self.stack[-1] if self.stack else None


def _trunc_div(a:int, b:int)->int:
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q

_int_re = re.compile(r"[+-]?[0-9]+")
ops = {"+": operator.add, "-": operator.sub, "*": operator.mul, "/": _trunc_div}


def _apply(stack:list[int], token:str):
    if len(stack) < 2: raise StackUnderflowError(f"{token!r} needs 2 operands, stack has {len(stack)}")
    b, a = stack[-1], stack[-2]
    if token == "/" and b == 0: raise DivisionByZeroError("integer division by zero")
    del stack[-2:]
    stack.append(ops[token](a, b))


def calculate(stack:list[int], code:str):
    """Evaluate whitespace-separated RPN `code` in place on `stack` (top is the last item).

    Operators pop `b` (top) then `a` and push `a op b`; `/` truncates toward zero. Evaluation
    stops at the first failing token: earlier tokens keep their effect, later ones are skipped,
    and the failing token leaves the stack as it found it.
    """
    for token in code.split():
        if token in ops: _apply(stack, token)
        elif _int_re.fullmatch(token): stack.append(int(token))
        else: raise InvalidTokenError(f"Invalid integer: {token}")
