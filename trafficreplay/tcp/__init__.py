"""TCP packet parsing and reassembly of packets into messages."""