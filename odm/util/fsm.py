#!/usr/bin/env python

"""
@file odm/util/fsm.py
@brief Table driven state machine. Transitions map (input_symbol,
current_state) to the next state; an input with no transition is an error.
"""

class ExceptionFSM(Exception):
    """This is the FSM Exception class."""

    def __init__(self, value):
        Exception.__init__(self, value)
        self.value = value

    def __str__(self):
        return self.value

class FSM(object):

    def __init__(self, initial_state):
        # Map (input_symbol, current_state) --> next_state
        self.state_transitions = {}
        self.initial_state = initial_state
        self.current_state = initial_state

    def add_transition(self, input_symbol, state, next_state=None):
        """
        @param next_state defaults to state: the input is accepted, nothing changes
        """
        if next_state is None:
            next_state = state
        self.state_transitions[(input_symbol, state)] = next_state

    def add_transition_list(self, list_input_symbols, state, next_state=None):
        for input_symbol in list_input_symbols:
            self.add_transition(input_symbol, state, next_state)

    def get_transition(self, input_symbol, state):
        try:
            return self.state_transitions[(input_symbol, state)]
        except KeyError:
            raise ExceptionFSM('Transition is undefined: (%s, %s).' %
                (str(input_symbol), str(state)))

    def process(self, input_symbol):
        """
        Moves to the state the transition for input_symbol leads to.
        @retval the new current state
        """
        self.current_state = self.get_transition(input_symbol, self.current_state)
        return self.current_state
