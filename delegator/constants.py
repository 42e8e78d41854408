"""Protocol constants, default deployment addresses, typed-data schemas, and ABIs."""

from web3 import Web3


# --- Authorities ---
# A root delegation carries the all-ones authority instead of a parent hash.
ROOT_AUTHORITY = b"\xff" * 32

# --- ERC-7579 execution mode codes (bytes32) ---
# callType (1 byte) | execType (1 byte) | unused (4) | selector (4) | payload (22)
SINGLE_DEFAULT_MODE = bytes(32)
BATCH_DEFAULT_MODE = b"\x01" + bytes(31)

# --- ERC-4337 ---
ENTRY_POINT_V07 = "0x0000000071727de22e5e9d8baf0edac6f37da032"

# Placeholder signature used while estimating gas: a well-formed 65-byte
# ECDSA signature that recovers to some address but never validates.
DUMMY_SIGNATURE = bytes.fromhex("ff" * 15 + "f0" + "00" * 15 + "07" + "aa" * 32 + "1c")

# --- EIP-712 domains ---
DELEGATION_MANAGER_DOMAIN_NAME = "DelegationManager"
HYBRID_DELEGATOR_DOMAIN_NAME = "HybridDeleGator"
DOMAIN_VERSION = "1"

# --- Local Anvil deployment (delegation framework deploy script defaults) ---
ANVIL_CHAIN_ID = 31337
ANVIL_DEPLOYMENT = {
    "CHAIN_ID": str(ANVIL_CHAIN_ID),
    "ENTRYPOINT_ADDRESS": "0x5FbDB2315678afecb367f032d93F642f64180aa3",
    "DELEGATION_MANAGER_ADDRESS": "0xE539562BB7bDa922a9b14f7b1B389a8a53404C1D",
    "HYBRID_DELEGATOR_ADDRESS": "0xdCD4044B3305bB1DB237a45a32F30f7703Fc2556",
    "SIMPLE_FACTORY_ADDRESS": "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512",
}
# Anvil's first prefunded development key.
ANVIL_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

# --- Enforcer names (keys of Environment.enforcers) ---
ALLOWED_TARGETS = "AllowedTargets"
VALUE_LTE = "ValueLte"

# --- Typed-data schemas ---
EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

DELEGATION_TYPES = {
    "EIP712Domain": EIP712_DOMAIN_TYPE,
    "Delegation": [
        {"name": "delegate", "type": "address"},
        {"name": "delegator", "type": "address"},
        {"name": "authority", "type": "bytes32"},
        {"name": "caveats", "type": "Caveat[]"},
        {"name": "salt", "type": "uint256"},
    ],
    # Caveat args are supplied at redemption time and are not signed.
    "Caveat": [
        {"name": "enforcer", "type": "address"},
        {"name": "terms", "type": "bytes"},
    ],
}

PACKED_USER_OPERATION_TYPES = {
    "EIP712Domain": EIP712_DOMAIN_TYPE,
    "PackedUserOperation": [
        {"name": "sender", "type": "address"},
        {"name": "nonce", "type": "uint256"},
        {"name": "initCode", "type": "bytes"},
        {"name": "callData", "type": "bytes"},
        {"name": "accountGasLimits", "type": "bytes32"},
        {"name": "preVerificationGas", "type": "uint256"},
        {"name": "gasFees", "type": "bytes32"},
        {"name": "paymasterAndData", "type": "bytes"},
        {"name": "entryPoint", "type": "address"},
    ],
}

# ABI type strings for the on-chain Delegation struct.
CAVEAT_ABI_TYPE = "(address,bytes,bytes)"
DELEGATION_ABI_TYPE = f"(address,address,bytes32,{CAVEAT_ABI_TYPE}[],uint256,bytes)"
EXECUTION_ABI_TYPE = "(address,uint256,bytes)"

# --- Function selectors (first 4 bytes of keccak) ---
REDEEM_DELEGATIONS_SIG = "redeemDelegations(bytes[],bytes32[],bytes[])"
REDEEM_DELEGATIONS_SELECTOR = bytes(Web3.keccak(text=REDEEM_DELEGATIONS_SIG)[:4])
EXECUTE_SIG = "execute(bytes32,bytes)"
EXECUTE_SELECTOR = bytes(Web3.keccak(text=EXECUTE_SIG)[:4])
DEPLOY_SIG = "deploy(bytes,bytes32)"
DEPLOY_SELECTOR = bytes(Web3.keccak(text=DEPLOY_SIG)[:4])
HYBRID_INITIALIZE_SIG = "initialize(address,string[],uint256[],uint256[])"
HYBRID_INITIALIZE_SELECTOR = bytes(Web3.keccak(text=HYBRID_INITIALIZE_SIG)[:4])
GET_NONCE_SIG = "getNonce(address,uint192)"
GET_NONCE_SELECTOR = bytes(Web3.keccak(text=GET_NONCE_SIG)[:4])
