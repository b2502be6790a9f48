from fidelis.guardian.client import GuardianClient, map_final_gate_decision

__all__ = ["GuardianClient", "map_final_gate_decision"]
